from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..config import CrawlerConfig
from ..errors import CancellationError
from ..models import CrawlingRange, ListEntity
from ..planner import PageLayout
from ..state import CrawlStage, CrawlState
from ..strategies.base import FetchStrategy
from ..utils.retry import fixed_delay
from .pool import run_pool

logger = logging.getLogger(__name__)

# (succeeded, total_pages, page_statuses, retry_count, stage_start, is_complete)
ListProgressCallback = Callable[[int, int, Dict[int, str], int, float, bool], None]


class ListCollector:
    """Stage 1: walk listing pages high -> low and turn them into ListEntity rows."""

    def __init__(
        self,
        strategy: FetchStrategy,
        state: CrawlState,
        config: CrawlerConfig,
        layout: Optional[PageLayout] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        self.strategy = strategy
        self.state = state
        self.config = config
        self.layout = layout
        self.cancel = cancel

    async def collect(
        self,
        target: Union[CrawlingRange, Iterable[int]],
        on_progress: Optional[ListProgressCallback] = None,
    ) -> List[ListEntity]:
        if isinstance(target, CrawlingRange):
            pages = list(target.pages())
        else:
            pages = sorted(set(target), reverse=True)

        stage_start = time.time()
        statuses: Dict[int, str] = {page: "waiting" for page in pages}
        collected: List[ListEntity] = []
        succeeded = 0
        retries = 0
        cancelled = False
        logger.info("Collecting %s list pages (%s..%s)", len(pages), pages[0] if pages else "-", pages[-1] if pages else "-")

        async def fetch(page: int) -> List[ListEntity]:
            statuses[page] = "running"
            return await self.strategy.fetch_list_page(page, self.cancel)

        async for outcome in run_pool(
            pages,
            fetch,
            concurrency=self.config.initial_concurrency,
            max_attempts=self.config.product_list_retry_count + 1,
            delay=fixed_delay(self.config.retry_delay_ms / 1000),
            cancel=self.cancel,
        ):
            page = outcome.item
            for _ in range(outcome.retries):
                self.state.record_retry(CrawlStage.LIST_COLLECTION)
            retries += outcome.retries

            if outcome.cancelled or (self.cancel is not None and self.cancel.is_set()):
                # Results that land after the stop signal are dropped.
                cancelled = True
                statuses[page] = "incomplete"
            elif outcome.error is not None:
                statuses[page] = "failed"
                self.state.record_page_failure(page, outcome.error)
                logger.warning(
                    "Page %s failed after %s attempts: %s", page, outcome.retries + 1, outcome.error
                )
            else:
                statuses[page] = "success"
                succeeded += 1
                self.state.record_page_success(page)
                collected.extend(self._normalize(page, outcome.result or []))

            if on_progress is not None:
                on_progress(succeeded, len(pages), dict(statuses), retries, stage_start, False)

        if on_progress is not None:
            on_progress(succeeded, len(pages), dict(statuses), retries, stage_start, True)

        if cancelled:
            raise CancellationError("list collection stopped")

        logger.info(
            "List collection finished: %s/%s pages, %s products, %s retries",
            succeeded, len(pages), len(collected), retries,
        )
        return collected

    def _normalize(self, page_number: int, raw: List[ListEntity]) -> List[ListEntity]:
        if self.layout is None:
            return list(raw)
        out = []
        for entity in raw:
            page_id, index_in_page = self.layout.to_local(page_number, entity.index_in_page)
            out.append(replace(entity, page_id=page_id, index_in_page=index_in_page))
        return out
