from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from ..errors import CancellationError
from ..utils.retry import DelayFn, retry_async

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


@dataclass
class Outcome(Generic[ItemT, ResultT]):
    item: ItemT
    result: Optional[ResultT] = None
    error: Optional[BaseException] = None
    retries: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


async def run_pool(
    items: Sequence[ItemT],
    fetch: Callable[[ItemT], Awaitable[ResultT]],
    *,
    concurrency: int,
    max_attempts: int,
    delay: DelayFn,
    cancel: Optional[asyncio.Event] = None,
) -> AsyncIterator[Outcome[ItemT, ResultT]]:
    """
    Fetch every item with at most ``concurrency`` in flight and yield outcomes as they
    settle. Each item gets up to ``max_attempts`` tries. Workers never touch shared
    state; the consumer of this generator does.
    """
    queue: asyncio.Queue = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)
    results: asyncio.Queue = asyncio.Queue()

    async def worker() -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if cancel is not None and cancel.is_set():
                await results.put(Outcome(item=item, cancelled=True))
                continue
            retries = 0

            def on_retry(attempt: int, exc: BaseException) -> None:
                nonlocal retries
                retries += 1

            try:
                value = await retry_async(
                    lambda attempt: fetch(item),
                    max_attempts=max_attempts,
                    delay=delay,
                    on_retry=on_retry,
                    cancel=cancel,
                )
            except CancellationError:
                await results.put(Outcome(item=item, retries=retries, cancelled=True))
            except Exception as exc:
                await results.put(Outcome(item=item, error=exc, retries=retries))
            else:
                await results.put(Outcome(item=item, result=value, retries=retries))

    workers: List[asyncio.Task] = [
        asyncio.create_task(worker()) for _ in range(max(1, min(concurrency, len(items))))
    ]
    try:
        for _ in range(len(items)):
            yield await results.get()
    finally:
        for task in workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
