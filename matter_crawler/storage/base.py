from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from ..models import DetailEntity, ListEntity


@dataclass
class UpsertResult:
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class StoreSummary:
    product_count: int = 0
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_count": self.product_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class RunMetadata:
    last_updated: datetime
    total_count: int


class PersistenceSink(Protocol):
    """
    Record store used by the engine. Each call is its own transaction; a failing call
    raises PersistenceError and leaves earlier commits untouched.
    """

    def upsert_list_entities(self, entities: Iterable[ListEntity]) -> UpsertResult:
        ...

    def upsert_detail_entities(self, entities: Iterable[DetailEntity]) -> UpsertResult:
        ...

    def count_by_page(self, page_id: int) -> int:
        ...

    def distinct_occupied_indices(self, page_id: int) -> Set[int]:
        ...

    def max_page_id(self) -> Optional[int]:
        ...

    def summary(self) -> StoreSummary:
        ...

    def get_products(self, keys: Iterable[str]) -> Dict[str, ListEntity]:
        ...

    def find_missing_details(self) -> List[ListEntity]:
        ...

    def list_details(self) -> List[DetailEntity]:
        ...

    def detail_count(self) -> int:
        ...

    def write_run_metadata(self, total_count: int) -> RunMetadata:
        ...

    def read_run_metadata(self) -> Optional[RunMetadata]:
        ...
