from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .models import CrawlingRange, ListEntity, PageGap
from .planner import PageLayout, group_pages
from .storage.base import PersistenceSink

logger = logging.getLogger(__name__)


@dataclass
class GapDetectionResult:
    missing_pages: List[PageGap] = field(default_factory=list)
    total_missing_products: int = 0
    completion_percentage: float = 100.0
    completely_missing_page_ids: List[int] = field(default_factory=list)
    partially_missing_page_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missing_pages": [
                {
                    "page_id": g.page_id,
                    "actual_count": g.actual_count,
                    "expected_count": g.expected_count,
                    "missing_indices": list(g.missing_indices),
                }
                for g in self.missing_pages
            ],
            "total_missing_products": self.total_missing_products,
            "completion_percentage": round(self.completion_percentage, 2),
            "completely_missing_page_ids": list(self.completely_missing_page_ids),
            "partially_missing_page_ids": list(self.partially_missing_page_ids),
        }


class GapDetector:
    """Compare the stored (page_id, index_in_page) grid against a full one."""

    def __init__(self, sink: PersistenceSink) -> None:
        self.sink = sink

    def detect(self, expected_per_page: int) -> GapDetectionResult:
        max_page_id = self.sink.max_page_id()
        if max_page_id is None:
            logger.info("Store is empty; nothing to reconcile")
            return GapDetectionResult()
        return self.detect_range(0, max_page_id, expected_per_page)

    def detect_range(self, start_page_id: int, end_page_id: int, expected_per_page: int) -> GapDetectionResult:
        if expected_per_page <= 0:
            raise ValueError("expected_per_page must be > 0")
        result = GapDetectionResult()
        expected_total = 0
        for page_id in range(start_page_id, end_page_id + 1):
            expected_total += expected_per_page
            actual = self.sink.count_by_page(page_id)
            if actual >= expected_per_page:
                continue
            if actual == 0:
                missing = list(range(expected_per_page))
                result.completely_missing_page_ids.append(page_id)
            else:
                occupied = self.sink.distinct_occupied_indices(page_id)
                missing = [i for i in range(expected_per_page) if i not in occupied]
                result.partially_missing_page_ids.append(page_id)
            result.missing_pages.append(
                PageGap(
                    page_id=page_id,
                    actual_count=expected_per_page - len(missing),
                    expected_count=expected_per_page,
                    missing_indices=missing,
                )
            )
            result.total_missing_products += len(missing)

        if expected_total:
            result.completion_percentage = (expected_total - result.total_missing_products) / expected_total * 100
        logger.info(
            "Gap detection over page_id %s-%s: %s missing products (%s empty pages, %s partial), %.1f%% complete",
            start_page_id, end_page_id, result.total_missing_products,
            len(result.completely_missing_page_ids), len(result.partially_missing_page_ids),
            result.completion_percentage,
        )
        return result


class GapReconciler:
    """Turn detected gaps into crawlable site ranges."""

    @staticmethod
    def to_ranges(gaps: Iterable[PageGap], layout: PageLayout) -> List[CrawlingRange]:
        site_pages = set()
        for gap in gaps:
            indices = gap.missing_indices or range(gap.expected_count)
            pages = layout.site_pages_for(gap.page_id, indices)
            if not pages:
                logger.info("page_id %s has no site page behind its missing positions; skipped", gap.page_id)
                continue
            site_pages.update(pages)
        return group_pages(site_pages)


@dataclass
class MissingDataAnalysis:
    missing_details: List[ListEntity]
    incomplete_pages: List[PageGap]
    products_count: int
    details_count: int

    @property
    def difference(self) -> int:
        return self.products_count - self.details_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missing_details": [e.key for e in self.missing_details],
            "incomplete_pages": [g.page_id for g in self.incomplete_pages],
            "products_count": self.products_count,
            "details_count": self.details_count,
            "difference": self.difference,
        }


class MissingDataAnalyzer:
    """Products that were listed but never enriched, plus pages with holes."""

    def __init__(self, sink: PersistenceSink) -> None:
        self.sink = sink

    def analyze(self, expected_per_page: int, detector: Optional[GapDetector] = None) -> MissingDataAnalysis:
        gaps = (detector or GapDetector(self.sink)).detect(expected_per_page)
        analysis = MissingDataAnalysis(
            missing_details=self.sink.find_missing_details(),
            incomplete_pages=gaps.missing_pages,
            products_count=self.sink.summary().product_count,
            details_count=self.sink.detail_count(),
        )
        logger.info(
            "Missing data: %s products without details, %s incomplete pages",
            len(analysis.missing_details), len(analysis.incomplete_pages),
        )
        return analysis
