from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterator, List, Optional


@dataclass(frozen=True)
class CrawlingRange:
    """Pages are walked high -> low, so start_page is the larger number."""

    start_page: int
    end_page: int

    def __post_init__(self) -> None:
        if self.end_page < 1 or self.start_page < self.end_page:
            raise ValueError(
                f"invalid crawling range {self.start_page}-{self.end_page}: need start >= end >= 1"
            )

    @property
    def page_count(self) -> int:
        return self.start_page - self.end_page + 1

    def pages(self) -> Iterator[int]:
        return iter(range(self.start_page, self.end_page - 1, -1))

    def to_dict(self) -> Dict[str, int]:
        return {"start_page": self.start_page, "end_page": self.end_page}


@dataclass(frozen=True)
class ListEntity:
    """One row of a listing page."""

    key: str  # canonical product URL
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    certificate_id: Optional[str] = None
    page_id: int = 0
    index_in_page: int = 0

    def significant_fields(self) -> tuple:
        return (self.manufacturer, self.model, self.certificate_id, self.page_id, self.index_in_page)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DetailEntity(ListEntity):
    device_type: Optional[str] = None
    certification_date: Optional[str] = None
    software_version: Optional[str] = None
    hardware_version: Optional[str] = None
    vid: Optional[str] = None
    pid: Optional[str] = None
    family_sku: Optional[str] = None
    family_variant_sku: Optional[str] = None
    firmware_version: Optional[str] = None
    family_id: Optional[str] = None
    tis_trp_tested: Optional[str] = None
    specification_version: Optional[str] = None
    transport_interface: Optional[str] = None
    primary_device_type_id: Optional[str] = None
    application_categories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["application_categories"] = list(self.application_categories)
        return data


@dataclass
class PageGap:
    page_id: int
    actual_count: int
    expected_count: int
    missing_indices: List[int] = field(default_factory=list)

    @property
    def is_complete_gap(self) -> bool:
        return self.actual_count == 0


@dataclass
class ValidationSummary:
    total: int = 0
    new: int = 0
    existing: int = 0
    duplicate: int = 0

    @property
    def skip_ratio(self) -> float:
        if not self.total:
            return 0.0
        return (self.existing + self.duplicate) / self.total * 100

    @property
    def duplicate_ratio(self) -> float:
        if not self.total:
            return 0.0
        return self.duplicate / self.total * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "new": self.new,
            "existing": self.existing,
            "duplicate": self.duplicate,
            "skip_ratio": round(self.skip_ratio, 2),
            "duplicate_ratio": round(self.duplicate_ratio, 2),
        }


@dataclass(frozen=True)
class BatchPlan:
    batch_number: int  # 1-based
    total_batches: int
    range: CrawlingRange
