from __future__ import annotations

import asyncio
import logging
import random
from typing import List, Optional, Tuple

from aiohttp import ClientSession

from ..adapters.base import SiteAdapter
from ..adapters.csa_iot import CsaIotAdapter
from ..config import CrawlerConfig
from ..errors import DetailFetchError, PageFetchError, PageTimeoutError
from ..models import DetailEntity, ListEntity
from ..utils.http import FETCH_ERRORS, create_session, fetch_text
from .base import discover_total_pages, ensure_not_cancelled

logger = logging.getLogger(__name__)


class HttpFetchStrategy:
    """
    Lightweight backend: plain aiohttp requests parsed with BeautifulSoup.
    Fast, but only sees server-rendered markup.
    """

    name = "http"

    def __init__(
        self,
        config: CrawlerConfig,
        adapter: Optional[SiteAdapter] = None,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.config = config
        self.adapter = adapter or CsaIotAdapter(config.matter_filter_url, config.base_url)
        self._session = session
        self._owns_session = session is None

    async def prepare(self) -> None:
        if self._session is None:
            self._session = create_session()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    # ---------- FetchStrategy ----------

    async def fetch_total_pages(self) -> Tuple[int, int]:
        await self.prepare()
        return await discover_total_pages(
            self._load_list_html,
            self.adapter,
            retry_delay=self.config.retry_delay_ms / 1000,
            max_delay=self.config.retry_max_delay_ms / 1000,
        )

    async def fetch_list_page(self, page_number: int, cancel: Optional[asyncio.Event] = None) -> List[ListEntity]:
        ensure_not_cancelled(cancel)
        html = await self._load_list_html(page_number)
        return self.adapter.parse_list(html, page_number)

    async def fetch_detail(self, entity: ListEntity, cancel: Optional[asyncio.Event] = None) -> DetailEntity:
        ensure_not_cancelled(cancel)
        await self._pace()
        timeout_ms = self.config.product_detail_timeout_ms
        try:
            html = await fetch_text(
                self._require_session(),
                entity.key,
                timeout=timeout_ms / 1000,
                user_agent=self.config.user_agent,
            )
        except asyncio.TimeoutError as exc:
            raise DetailFetchError(entity.key, f"timed out after {timeout_ms}ms") from exc
        except FETCH_ERRORS as exc:
            raise DetailFetchError(entity.key, str(exc) or repr(exc)) from exc
        return self.adapter.parse_detail(html, entity)

    # ---------- helpers ----------

    async def _load_list_html(self, page_number: Optional[int]) -> str:
        await self._pace()
        url = self.adapter.list_page_url(page_number)
        timeout_ms = self.config.page_timeout_ms
        try:
            return await fetch_text(
                self._require_session(),
                url,
                timeout=timeout_ms / 1000,
                user_agent=self.config.user_agent,
            )
        except asyncio.TimeoutError as exc:
            raise PageTimeoutError(page_number or 1, timeout_ms) from exc
        except FETCH_ERRORS as exc:
            raise PageFetchError(page_number or 1, str(exc) or repr(exc)) from exc

    async def _pace(self) -> None:
        low, high = self.config.min_request_delay_ms, self.config.max_request_delay_ms
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high) / 1000)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("HttpFetchStrategy.prepare() must be called first")
        return self._session
