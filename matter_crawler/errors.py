from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import CrawlingRange


class CrawlerError(Exception):
    """Base class for every error raised by the crawler."""


class DiscoveryError(CrawlerError):
    """Total page count could not be determined. Fatal for the run."""


class PageFetchError(CrawlerError):
    def __init__(self, page_number: int, message: str) -> None:
        super().__init__(f"page {page_number}: {message}")
        self.page_number = page_number


class PageTimeoutError(PageFetchError):
    def __init__(self, page_number: int, timeout_ms: int) -> None:
        super().__init__(page_number, f"timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class DetailFetchError(CrawlerError):
    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{key}: {message}")
        self.key = key


class SubRangeExhaustedError(CrawlerError):
    def __init__(self, crawl_range: "CrawlingRange", attempts: int, critical: bool = False) -> None:
        super().__init__(
            f"pages {crawl_range.start_page}-{crawl_range.end_page} still failing after {attempts} attempts"
        )
        self.crawl_range = crawl_range
        self.attempts = attempts
        self.critical = critical


class PersistenceError(CrawlerError):
    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class CancellationError(CrawlerError):
    """Raised when the engine's stop signal is observed. Not a real failure."""


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate: only fetch-level failures are worth another attempt."""
    return isinstance(exc, (PageFetchError, DetailFetchError))
