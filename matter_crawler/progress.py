from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrawlProgress:
    stage: str
    step: str = ""
    message: str = ""
    percentage: float = 0.0
    current_page: int = 0
    total_pages: int = 0
    processed_items: int = 0
    total_items: int = 0
    new_items: int = 0
    updated_items: int = 0
    retry_count: int = 0
    current_batch: Optional[int] = None
    total_batches: Optional[int] = None
    elapsed_time: float = 0.0
    remaining_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressListener = Callable[[CrawlProgress], None]


class ProgressChannel:
    """
    Append-only stream of progress snapshots.

    Created by whoever owns the engine and passed in explicitly. Listeners never
    block the crawl: when a loop is running they are scheduled on it, and a listener
    that raises only produces a log line.
    """

    def __init__(self, max_history: int = 10000) -> None:
        self._listeners: List[ProgressListener] = []
        self.history: Deque[CrawlProgress] = deque(maxlen=max_history)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, progress: CrawlProgress) -> None:
        self.history.append(progress)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for listener in list(self._listeners):
            if loop is not None:
                loop.call_soon(self._deliver, listener, progress)
            else:
                self._deliver(listener, progress)

    @property
    def latest(self) -> Optional[CrawlProgress]:
        return self.history[-1] if self.history else None

    @staticmethod
    def _deliver(listener: ProgressListener, progress: CrawlProgress) -> None:
        try:
            listener(progress)
        except Exception:
            logger.exception("Progress listener %r failed", listener)


def estimate_remaining(elapsed: float, done: int, total: int) -> Optional[float]:
    if done <= 0 or total <= 0:
        return None
    return max(0.0, elapsed / done * (total - done))


def percentage(done: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return min(100.0, done / total * 100)
