from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Set, Tuple

from ..models import ListEntity, ValidationSummary
from ..storage.base import PersistenceSink

logger = logging.getLogger(__name__)

DUPLICATE_WARNING_RATIO = 20.0
SKIP_WARNING_RATIO = 50.0


@dataclass
class ValidationResult:
    new_products: List[ListEntity] = field(default_factory=list)
    existing_products: List[ListEntity] = field(default_factory=list)
    duplicate_products: List[ListEntity] = field(default_factory=list)
    summary: ValidationSummary = field(default_factory=ValidationSummary)


class ValidationCollector:
    """
    Split freshly collected entities into new / existing / duplicate against the store.

    Only the first occurrence of a key is classified against the store; later ones are
    duplicates. A stored key whose listing fields changed counts as new so it gets
    enriched and updated again.
    """

    def __init__(self, sink: PersistenceSink) -> None:
        self.sink = sink

    def validate_and_filter(self, entities: List[ListEntity]) -> ValidationResult:
        result = ValidationResult()
        stored = self.sink.get_products({e.key for e in entities}) if entities else {}
        seen: Set[str] = set()

        for entity in entities:
            if entity.key in seen:
                result.duplicate_products.append(entity)
                continue
            seen.add(entity.key)
            previous = stored.get(entity.key)
            if previous is not None and previous.significant_fields() == entity.significant_fields():
                result.existing_products.append(entity)
            else:
                result.new_products.append(entity)

        summary = result.summary
        summary.total = len(entities)
        summary.new = len(result.new_products)
        summary.existing = len(result.existing_products)
        summary.duplicate = len(result.duplicate_products)

        logger.info(
            "Validation: %s total, %s new, %s existing, %s duplicate (skip %.1f%%)",
            summary.total, summary.new, summary.existing, summary.duplicate, summary.skip_ratio,
        )
        if summary.duplicate_ratio > DUPLICATE_WARNING_RATIO:
            logger.warning("High duplicate ratio %.1f%%; the site listing may have shifted", summary.duplicate_ratio)
        if summary.skip_ratio > SKIP_WARNING_RATIO:
            logger.warning("Skip ratio %.1f%%; consider narrowing the crawl range", summary.skip_ratio)
        return result


def validate_crawling_range(summary: ValidationSummary) -> Tuple[bool, List[str]]:
    """Advisory check on whether the last crawl range was a sensible size."""
    recommendations: List[str] = []
    appropriate = True

    if summary.skip_ratio > 50:
        appropriate = False
        recommendations.append(
            f"{summary.skip_ratio:.1f}% of products were already stored; reduce the page range limit."
        )
    if summary.duplicate_ratio > 10:
        appropriate = False
        recommendations.append(
            f"{summary.duplicate_ratio:.1f}% duplicates; the listing may have shifted during the crawl."
        )
    if summary.new < 5 and summary.total > 20:
        recommendations.append("Very few new products found; the local store is close to up to date.")

    return appropriate, recommendations
