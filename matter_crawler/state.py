from __future__ import annotations

import logging
import time
from collections import defaultdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class CrawlStage(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LIST_COLLECTION = "list_collection"
    VALIDATION = "validation"
    DETAIL_COLLECTION = "detail_collection"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (CrawlStage.COMPLETED, CrawlStage.FAILED, CrawlStage.STOPPED)


class CrawlState:
    """
    Run-scoped counters, failure ledgers and the current stage.

    Owned by the engine and handed to collectors by reference. All writes go through
    the record_* methods so that processed_items never exceeds total_items.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.stage: CrawlStage = CrawlStage.IDLE
        self.started_at: float = time.monotonic()
        self.total_items = 0
        self.processed_items = 0
        self.new_items = 0
        self.updated_items = 0
        self.unchanged_items = 0
        self.failed_items = 0
        self.persist_failures = 0
        self.pages_succeeded = 0
        self.retry_counts: Dict[CrawlStage, int] = defaultdict(int)
        self.batch_retries = 0
        self.failed_pages: Set[int] = set()
        self.failed_page_errors: Dict[int, List[str]] = {}
        self.failed_products: Set[str] = set()
        self.failed_product_errors: Dict[str, List[str]] = {}
        self.critical_failures: List[str] = []

    # ---------- stage ----------

    def set_stage(self, stage: CrawlStage) -> None:
        if stage != self.stage:
            logger.info("Stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage

    # ---------- list stage ----------

    def record_page_success(self, page_number: int) -> None:
        self.pages_succeeded += 1
        # A page that succeeded on a later pass is no longer failed.
        self.failed_pages.discard(page_number)
        self.failed_page_errors.pop(page_number, None)

    def record_page_failure(self, page_number: int, error: BaseException | str) -> None:
        self.failed_pages.add(page_number)
        self.failed_page_errors.setdefault(page_number, []).append(str(error))

    def clear_page_failures(self, pages: Optional[Iterable[int]] = None) -> None:
        if pages is None:
            self.failed_pages.clear()
            self.failed_page_errors.clear()
            return
        for page in pages:
            self.failed_pages.discard(page)
            self.failed_page_errors.pop(page, None)

    # ---------- detail stage ----------

    def set_expected_items(self, count: int) -> None:
        self.total_items = max(self.total_items, self.processed_items, count)

    def add_expected_items(self, count: int) -> None:
        self.set_expected_items(self.total_items + count)

    def record_detail_result(self, key: str, error: Optional[BaseException | str] = None) -> None:
        if self.processed_items >= self.total_items:
            logger.warning("processed items would exceed total (%s); growing total", self.total_items)
            self.total_items = self.processed_items + 1
        self.processed_items += 1
        if error is None:
            self.failed_products.discard(key)
            self.failed_product_errors.pop(key, None)
            return
        self.failed_items += 1
        self.failed_products.add(key)
        self.failed_product_errors.setdefault(key, []).append(str(error))

    # ---------- shared ----------

    def record_retry(self, stage: CrawlStage) -> None:
        self.retry_counts[stage] += 1

    def retry_count(self, stage: CrawlStage) -> int:
        return self.retry_counts.get(stage, 0)

    def record_batch_retry(self) -> None:
        self.batch_retries += 1

    def record_persist(self, added: int, updated: int, unchanged: int, failed: int) -> None:
        self.new_items += added
        self.updated_items += updated
        self.unchanged_items += unchanged
        self.persist_failures += failed

    def record_critical(self, message: str) -> None:
        logger.error("Critical failure: %s", message)
        self.critical_failures.append(message)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_pages or self.failed_products or self.persist_failures)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "new_items": self.new_items,
            "updated_items": self.updated_items,
            "unchanged_items": self.unchanged_items,
            "failed_items": self.failed_items,
            "persist_failures": self.persist_failures,
            "pages_succeeded": self.pages_succeeded,
            "retry_counts": {stage.value: n for stage, n in self.retry_counts.items()},
            "batch_retries": self.batch_retries,
            "failed_pages": sorted(self.failed_pages, reverse=True),
            "failed_products": sorted(self.failed_products),
            "critical_failures": list(self.critical_failures),
        }
