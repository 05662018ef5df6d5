from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional, Tuple

from ..config import CrawlerConfig
from ..errors import CancellationError
from ..models import DetailEntity, ListEntity
from ..state import CrawlStage, CrawlState
from ..strategies.base import FetchStrategy
from ..utils.retry import fixed_delay
from .pool import run_pool

logger = logging.getLogger(__name__)

CRITICAL_FAILURE_RATE = 0.3

BatchTag = Optional[Tuple[int, int]]
# (processed, total, succeeded, retry_count, stage_start, is_complete, batch)
DetailProgressCallback = Callable[[int, int, int, int, float, bool, BatchTag], None]


class DetailCollector:
    """Stage 2: enrich list entities with their certificate detail pages."""

    def __init__(
        self,
        strategy: FetchStrategy,
        state: CrawlState,
        config: CrawlerConfig,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        self.strategy = strategy
        self.state = state
        self.config = config
        self.cancel = cancel

    async def collect(
        self,
        entities: List[ListEntity],
        on_progress: Optional[DetailProgressCallback] = None,
        batch: BatchTag = None,
    ) -> List[DetailEntity]:
        stage_start = time.time()
        total = len(entities)
        self.state.add_expected_items(total)
        details: List[DetailEntity] = []
        processed = 0
        failed = 0
        retries = 0
        cancelled = False
        tag = f" (batch {batch[0]}/{batch[1]})" if batch else ""
        logger.info("Collecting details for %s products%s", total, tag)

        async def fetch(entity: ListEntity) -> DetailEntity:
            return await self.strategy.fetch_detail(entity, self.cancel)

        async for outcome in run_pool(
            entities,
            fetch,
            concurrency=self.config.detail_concurrency,
            max_attempts=self.config.product_detail_retry_count + 1,
            delay=fixed_delay(self.config.retry_delay_ms / 1000),
            cancel=self.cancel,
        ):
            for _ in range(outcome.retries):
                self.state.record_retry(CrawlStage.DETAIL_COLLECTION)
            retries += outcome.retries

            if outcome.cancelled or (self.cancel is not None and self.cancel.is_set()):
                cancelled = True
                continue
            processed += 1
            if outcome.error is not None:
                failed += 1
                self.state.record_detail_result(outcome.item.key, outcome.error)
                logger.warning("Detail for %s failed: %s", outcome.item.key, outcome.error)
            else:
                self.state.record_detail_result(outcome.item.key)
                details.append(outcome.result)

            if on_progress is not None:
                on_progress(processed, total, len(details), retries, stage_start, False, batch)

        if on_progress is not None:
            on_progress(processed, total, len(details), retries, stage_start, True, batch)

        if cancelled:
            raise CancellationError("detail collection stopped")

        if total and failed / total > CRITICAL_FAILURE_RATE:
            self.state.record_critical(
                f"detail failure rate {failed / total:.0%} ({failed}/{total}){tag}"
            )
        logger.info("Detail collection finished%s: %s ok, %s failed", tag, len(details), failed)
        return details
