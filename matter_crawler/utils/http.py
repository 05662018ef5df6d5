from __future__ import annotations

import asyncio
from typing import Optional
from aiohttp import ClientSession, ClientTimeout
import aiohttp
import logging

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


class HttpStatusError(Exception):
    def __init__(self, url: str, status: int) -> None:
        super().__init__(f"HTTP {status} for {url}")
        self.url = url
        self.status = status


async def fetch_text(
    session: ClientSession,
    url: str,
    *,
    timeout: float = 15.0,
    user_agent: Optional[str] = None,
) -> str:
    """
    Fetch a URL once and return the body text.

    Raises asyncio.TimeoutError on timeout, HttpStatusError on non-2xx and
    aiohttp.ClientError on transport failures. Retrying is the caller's job.
    """
    headers = dict(DEFAULT_HEADERS)
    if user_agent:
        headers["User-Agent"] = user_agent

    async with session.get(url, headers=headers, timeout=ClientTimeout(total=timeout)) as resp:
        if resp.status >= 400:
            raise HttpStatusError(url, resp.status)
        return await resp.text()


def create_session() -> ClientSession:
    """
    Create a shared aiohttp ClientSession.
    """
    # Note: caller is responsible for closing the session (await session.close()).
    connector = aiohttp.TCPConnector(limit=0)  # unlimited; concurrency managed via semaphore
    return aiohttp.ClientSession(connector=connector)


FETCH_ERRORS = (asyncio.TimeoutError, HttpStatusError, aiohttp.ClientError)
