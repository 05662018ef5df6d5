from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from .collectors.list_collector import ListCollector, ListProgressCallback
from .errors import CancellationError, SubRangeExhaustedError
from .models import BatchPlan, CrawlingRange, ListEntity
from .state import CrawlState
from .utils.retry import backoff_delay, cancellable_sleep, retry_async

logger = logging.getLogger(__name__)

BatchHandler = Callable[[BatchPlan, List[ListEntity]], Awaitable[None]]
ProgressFactory = Callable[[BatchPlan], Optional[ListProgressCallback]]


def split_range(crawl_range: CrawlingRange, batch_size: int) -> List[BatchPlan]:
    """Cut a range into contiguous high -> low sub-ranges of at most batch_size pages."""
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")
    total_batches = math.ceil(crawl_range.page_count / batch_size)
    plans: List[BatchPlan] = []
    start = crawl_range.start_page
    for number in range(1, total_batches + 1):
        end = max(crawl_range.end_page, start - batch_size + 1)
        plans.append(BatchPlan(batch_number=number, total_batches=total_batches, range=CrawlingRange(start, end)))
        start = end - 1
    return plans


class _IncompleteSubRange(Exception):
    def __init__(self, entities: List[ListEntity], failed_pages: List[int]) -> None:
        super().__init__(f"{len(failed_pages)} pages failed: {failed_pages}")
        self.entities = entities
        self.failed_pages = failed_pages


@dataclass
class BatchRunResult:
    plans: List[BatchPlan] = field(default_factory=list)
    entities: List[ListEntity] = field(default_factory=list)
    failed_ranges: List[CrawlingRange] = field(default_factory=list)
    errors: List[SubRangeExhaustedError] = field(default_factory=list)
    completed_batches: int = 0

    @property
    def critical(self) -> bool:
        return any(e.critical for e in self.errors)


class BatchOrchestrator:
    """
    Runs a large range as a sequence of sub-ranges: list -> (validation, detail, persist)
    per batch, so every finished batch is durable before the next one starts.

    A sub-range with failed pages is retried as a whole.
    """

    def __init__(
        self,
        list_collector: ListCollector,
        state: CrawlState,
        on_batch_collected: Optional[BatchHandler] = None,
        progress_for: Optional[ProgressFactory] = None,
        cancel: Optional[asyncio.Event] = None,
        on_batch_start: Optional[Callable[[BatchPlan], None]] = None,
    ) -> None:
        self.list_collector = list_collector
        self.state = state
        self.on_batch_collected = on_batch_collected
        self.progress_for = progress_for
        self.cancel = cancel
        self.on_batch_start = on_batch_start

    async def run(
        self,
        crawl_range: CrawlingRange,
        batch_size: int,
        retry_limit: int,
        batch_delay: float,
        max_retry_delay: Optional[float] = None,
        collected_before: int = 0,
    ) -> BatchRunResult:
        result = BatchRunResult(plans=split_range(crawl_range, batch_size))
        logger.info(
            "Batch processing %s pages in %s batches of up to %s",
            crawl_range.page_count, len(result.plans), batch_size,
        )

        for plan in result.plans:
            if self.cancel is not None and self.cancel.is_set():
                raise CancellationError(f"stopped before batch {plan.batch_number}")
            if self.on_batch_start is not None:
                self.on_batch_start(plan)
            logger.info(
                "Batch %s/%s: pages %s-%s",
                plan.batch_number, plan.total_batches, plan.range.start_page, plan.range.end_page,
            )

            entities = await self._collect_sub_range(
                plan, retry_limit, batch_delay, max_retry_delay, result, collected_before
            )
            result.entities.extend(entities)

            if entities and self.on_batch_collected is not None:
                await self.on_batch_collected(plan, entities)
            result.completed_batches += 1

            if plan.batch_number < plan.total_batches and batch_delay > 0:
                await cancellable_sleep(batch_delay, self.cancel)

        return result

    async def _collect_sub_range(
        self,
        plan: BatchPlan,
        retry_limit: int,
        batch_delay: float,
        max_retry_delay: Optional[float],
        result: BatchRunResult,
        collected_before: int,
    ) -> List[ListEntity]:
        pages = list(plan.range.pages())
        progress = self.progress_for(plan) if self.progress_for is not None else None

        async def attempt(n: int) -> List[ListEntity]:
            if n > 0:
                self.state.clear_page_failures(pages)
                self.state.record_batch_retry()
                logger.info("Retrying batch %s (attempt %s/%s)", plan.batch_number, n + 1, retry_limit + 1)
            entities = await self.list_collector.collect(plan.range, progress)
            failed = sorted((p for p in pages if p in self.state.failed_pages), reverse=True)
            if failed:
                raise _IncompleteSubRange(entities, failed)
            return entities

        try:
            return await retry_async(
                attempt,
                max_attempts=retry_limit + 1,
                delay=backoff_delay(batch_delay, 1.5, max_retry_delay),
                should_retry=lambda exc: isinstance(exc, _IncompleteSubRange),
                cancel=self.cancel,
            )
        except _IncompleteSubRange as exc:
            collected_so_far = collected_before + len(result.entities) + len(exc.entities)
            error = SubRangeExhaustedError(plan.range, retry_limit + 1, critical=collected_so_far == 0)
            result.errors.append(error)
            result.failed_ranges.append(plan.range)
            if error.critical:
                self.state.record_critical(str(error))
            else:
                logger.warning("%s; keeping %s products from this batch", error, len(exc.entities))
            return exc.entities
