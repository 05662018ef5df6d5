from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from ..adapters.base import SiteAdapter
from ..config import CrawlerConfig
from ..errors import CancellationError, DiscoveryError, PageFetchError
from ..models import DetailEntity, ListEntity
from ..utils.loader import load_symbol
from ..utils.retry import backoff_delay, retry_async

logger = logging.getLogger(__name__)

MAX_FETCH_TOTAL_PAGES_ATTEMPTS = 3
# Probed when the landing page shows no pagination widget.
FALLBACK_PROBE_PAGE = 400

PageLoader = Callable[[Optional[int]], Awaitable[str]]


class FetchStrategy(Protocol):
    """
    Fetch backend used by the collectors. Every fetch is a single attempt; callers retry.
    """

    name: str

    async def prepare(self) -> None:
        ...

    async def fetch_total_pages(self) -> Tuple[int, int]:
        """Return (total_pages, last_page_item_count) or raise DiscoveryError."""
        ...

    async def fetch_list_page(self, page_number: int, cancel: Optional[asyncio.Event] = None) -> List[ListEntity]:
        ...

    async def fetch_detail(self, entity: ListEntity, cancel: Optional[asyncio.Event] = None) -> DetailEntity:
        ...

    async def close(self) -> None:
        ...


def ensure_not_cancelled(cancel: Optional[asyncio.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise CancellationError("crawl cancelled")


async def discover_total_pages(
    load_page: PageLoader,
    adapter: SiteAdapter,
    *,
    retry_delay: float,
    max_delay: float,
    max_attempts: int = MAX_FETCH_TOTAL_PAGES_ATTEMPTS,
) -> Tuple[int, int]:
    """
    Read the pagination widget, falling back to a far page probe, then count the
    items on the last page. Shared by every strategy so they agree on the result.
    """

    async def attempt(n: int) -> Tuple[int, int]:
        first_html = await load_page(None)
        total = adapter.parse_total_pages(first_html)

        if total <= 0:
            logger.debug("No pagination on landing page; probing page %s", FALLBACK_PROBE_PAGE)
            probe_html = await load_page(FALLBACK_PROBE_PAGE)
            probed = adapter.parse_total_pages(probe_html)
            if probed > 1:
                total = probed
            else:
                items = adapter.count_items(first_html) or adapter.count_items(probe_html)
                if items <= 0:
                    raise PageFetchError(0, "no pagination and no products found")
                logger.info("No pagination but %s products found; treating site as a single page", items)
                return 1, adapter.count_items(first_html) or items

        last_html = await load_page(total)
        last_count = adapter.count_items(last_html)
        return total, last_count

    def on_retry(n: int, exc: BaseException) -> None:
        logger.warning("fetch_total_pages attempt %s/%s failed: %s", n + 1, max_attempts, exc)

    try:
        total, last_count = await retry_async(
            attempt,
            max_attempts=max_attempts,
            delay=backoff_delay(retry_delay, 1.5, max_delay),
            should_retry=lambda exc: not isinstance(exc, CancellationError),
            on_retry=on_retry,
        )
    except CancellationError:
        raise
    except Exception as exc:
        raise DiscoveryError(f"failed to get total pages after {max_attempts} attempts: {exc}") from exc

    logger.info("Site has %s pages; last page holds %s products", total, last_count)
    return total, last_count


class TotalPagesCache:
    """TTL cache in front of fetch_total_pages; status checks should not hit the site every time."""

    def __init__(self, ttl_seconds: float) -> None:
        self.ttl_seconds = ttl_seconds
        self._value: Optional[Tuple[int, int]] = None
        self._cached_at: Optional[float] = None

    def has_valid(self) -> bool:
        return (
            self._value is not None
            and self._cached_at is not None
            and time.monotonic() - self._cached_at < self.ttl_seconds
        )

    async def get_or_fetch(
        self, fetch: Callable[[], Awaitable[Tuple[int, int]]], force: bool = False
    ) -> Tuple[int, int]:
        if not force and self.has_valid():
            return self._value  # type: ignore[return-value]
        value = await fetch()
        self._value = value
        self._cached_at = time.monotonic()
        return value

    def get(self) -> Optional[Tuple[int, int]]:
        return self._value if self.has_valid() else None

    def invalidate(self) -> None:
        self._value = None
        self._cached_at = None


def create_strategy(config: CrawlerConfig, adapter: Optional[SiteAdapter] = None) -> FetchStrategy:
    """
    Pick the fetch backend named by ``config.crawler_type``.
    A dotted ``module:ClassName`` path allows plugging in a custom strategy.
    """
    if config.crawler_type == "http":
        from .http_strategy import HttpFetchStrategy

        return HttpFetchStrategy(config, adapter=adapter)
    if config.crawler_type == "browser":
        from .browser_strategy import BrowserFetchStrategy

        return BrowserFetchStrategy(config, adapter=adapter)
    strategy_cls = load_symbol(config.crawler_type)
    return strategy_cls(config, adapter=adapter)
