from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from .models import CrawlingRange

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTS_PER_PAGE = 12


def plan(
    total_pages: int,
    last_page_item_count: int,
    user_page_cap: Optional[int],
    accumulated_local_count: int,
    products_per_page: int = DEFAULT_PRODUCTS_PER_PAGE,
) -> CrawlingRange:
    """
    Work out which site pages to crawl next.

    Site pages grow at the high end, so an empty store starts from the last page and a
    partially filled store resumes just below the pages it already covers.
    """
    if total_pages < 1:
        raise ValueError(f"total_pages must be >= 1, got {total_pages}")
    cap = user_page_cap or 0
    collected_pages = math.ceil(max(accumulated_local_count, 0) / products_per_page)

    if collected_pages == 0:
        start = total_pages
        end = max(1, total_pages - cap + 1) if cap > 0 else 1
        return CrawlingRange(start, end)

    start = max(1, total_pages - collected_pages)
    to_collect = cap if cap > 0 else total_pages - collected_pages
    # The store may already cover every page; still re-check the newest one.
    to_collect = max(1, to_collect)
    end = max(1, start - to_collect + 1)
    return CrawlingRange(start, end)


@dataclass(frozen=True)
class PageLayout:
    """Everything needed to turn a site position into stable storage coordinates."""

    total_pages: int
    last_page_item_count: int
    products_per_page: int = DEFAULT_PRODUCTS_PER_PAGE

    @property
    def offset(self) -> int:
        if self.last_page_item_count >= self.products_per_page:
            return 0
        return self.products_per_page - self.last_page_item_count

    def to_local(self, page_number: int, site_index: int) -> Tuple[int, int]:
        """
        Map (site page, position counted from the page's oldest item) to (page_id, index_in_page).
        page_id 0 holds the oldest products in the catalog.
        """
        site_page_number = self.total_pages - page_number
        if site_page_number == 0:
            absolute = site_index
        else:
            absolute = self.products_per_page * site_page_number + site_index - self.offset
        if absolute < 0:
            absolute = site_index
        return absolute // self.products_per_page, absolute % self.products_per_page

    def site_pages_for(self, page_id: int, indices: Iterable[int]) -> Set[int]:
        """
        Site pages holding the given positions of a stored page. With a partial last
        page one page_id spans two site pages; positions past the newest product have none.
        """
        per_page = self.products_per_page
        pages = set()
        for index in indices:
            absolute = page_id * per_page + index
            if absolute < min(self.last_page_item_count, per_page):
                site_page_number = 0
            else:
                site_page_number = (absolute + self.offset) // per_page
            page = self.total_pages - site_page_number
            if 1 <= page <= self.total_pages:
                pages.add(page)
        return pages


# ---------- manual page ranges ----------

_RANGE_TOKEN = re.compile(r"^(\d+)\s*[~\-]\s*(\d+)$")


@dataclass
class PageRangeParseResult:
    ranges: List[CrawlingRange] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_pages: int = 0
    estimated_products: int = 0

    @property
    def success(self) -> bool:
        return bool(self.ranges) and not self.errors


def parse_page_ranges(
    text: str, total_site_pages: int, products_per_page: int = DEFAULT_PRODUCTS_PER_PAGE
) -> PageRangeParseResult:
    """Parse input like "1~12, 34, 72" into merged, descending crawling ranges."""
    result = PageRangeParseResult()
    if total_site_pages < 1:
        result.errors.append("total site pages must be a positive integer")
        return result

    pages = set()
    for token in (t.strip() for t in (text or "").split(",")):
        if not token:
            continue
        match = _RANGE_TOKEN.match(token)
        if match:
            low, high = sorted((int(match.group(1)), int(match.group(2))))
        elif token.isdigit():
            low = high = int(token)
        else:
            result.errors.append(f"cannot parse '{token}'")
            continue
        if low < 1 or high > total_site_pages:
            result.errors.append(f"'{token}' is outside 1-{total_site_pages}")
            continue
        pages.update(range(low, high + 1))

    if not pages:
        result.errors.append("no valid pages")
        return result

    result.ranges = group_pages(pages)
    result.total_pages = len(pages)
    result.estimated_products = len(pages) * products_per_page
    logger.info("Parsed %s pages into %s ranges", len(pages), len(result.ranges))
    return result


def group_pages(pages) -> List[CrawlingRange]:
    """Group page numbers into descending contiguous ranges."""
    ordered = sorted(set(pages), reverse=True)
    ranges: List[CrawlingRange] = []
    if not ordered:
        return ranges
    start = prev = ordered[0]
    for page in ordered[1:]:
        if page == prev - 1:
            prev = page
            continue
        ranges.append(CrawlingRange(start, prev))
        start = prev = page
    ranges.append(CrawlingRange(start, prev))
    return ranges
