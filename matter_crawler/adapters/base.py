from __future__ import annotations

from typing import List, Protocol

from ..models import DetailEntity, ListEntity


class SiteAdapter(Protocol):
    """
    Interface for site-specific parsing logic.
    Strategies own fetching (HTTP or browser); adapters own turning HTML into entities,
    which keeps both strategies' output identical.
    """

    name: str
    domains: List[str]

    def list_page_url(self, page_number: int | None = None) -> str:
        """URL of a listing page; None means the unpaged landing page."""
        ...

    def parse_total_pages(self, html: str) -> int:
        """Highest page number shown by the pagination widget, 0 when absent."""
        ...

    def count_items(self, html: str) -> int:
        ...

    def parse_list(self, html: str, page_number: int) -> List[ListEntity]:
        """
        Entities in raw site coordinates: page_id is the site page and index_in_page
        counts from the oldest item on that page.
        """
        ...

    def parse_detail(self, html: str, entity: ListEntity) -> DetailEntity:
        ...
