from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

from playwright.async_api import Browser, BrowserContext, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..adapters.base import SiteAdapter
from ..adapters.csa_iot import ARTICLE_SELECTOR, CsaIotAdapter
from ..config import CrawlerConfig
from ..errors import DetailFetchError, DiscoveryError, PageFetchError, PageTimeoutError
from ..models import DetailEntity, ListEntity
from .base import discover_total_pages, ensure_not_cancelled

logger = logging.getLogger(__name__)

BLOCKED_RESOURCES = "**/*.{png,jpg,jpeg,gif,svg,css,woff,woff2}"


def app_data_dir() -> Path:
    base = os.getenv("LOCALAPPDATA") or str(Path.home() / ".matter-crawler")
    p = Path(base) / "matter-crawler"
    p.mkdir(parents=True, exist_ok=True)
    return p


def configure_browsers_path() -> None:
    # Keep downloaded browsers next to app data unless the user chose a location.
    os.environ.setdefault("PLAYWRIGHT_BROWSERS_PATH", str(app_data_dir() / "ms-playwright"))


class BrowserFetchStrategy:
    """
    Rendering backend: headless Chromium through Playwright.
    Handles JS-rendered pagination; images, fonts and stylesheets are blocked for speed.
    """

    name = "browser"

    def __init__(self, config: CrawlerConfig, adapter: Optional[SiteAdapter] = None) -> None:
        self.config = config
        self.adapter = adapter or CsaIotAdapter(config.matter_filter_url, config.base_url)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    async def prepare(self) -> None:
        if self._context is not None:
            return
        configure_browsers_path()
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.config.headless_browser)
            self._context = await self._browser.new_context(user_agent=self.config.user_agent)
            await self._context.route(BLOCKED_RESOURCES, _abort_route)
        except PlaywrightError as exc:
            await self.close()
            raise DiscoveryError(f"could not start browser: {exc}") from exc

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

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
        timeout_ms = self.config.product_detail_timeout_ms
        try:
            html = await self._render(entity.key, timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise DetailFetchError(entity.key, f"timed out after {timeout_ms}ms") from exc
        except PlaywrightError as exc:
            raise DetailFetchError(entity.key, str(exc)) from exc
        return self.adapter.parse_detail(html, entity)

    # ---------- helpers ----------

    async def _load_list_html(self, page_number: Optional[int]) -> str:
        url = self.adapter.list_page_url(page_number)
        timeout_ms = self.config.page_timeout_ms
        try:
            return await self._render(url, timeout_ms, wait_for=ARTICLE_SELECTOR)
        except PlaywrightTimeoutError as exc:
            raise PageTimeoutError(page_number or 1, timeout_ms) from exc
        except PlaywrightError as exc:
            raise PageFetchError(page_number or 1, str(exc)) from exc

    async def _render(self, url: str, timeout_ms: int, wait_for: Optional[str] = None) -> str:
        if self._context is None:
            raise RuntimeError("BrowserFetchStrategy.prepare() must be called first")
        page = await self._context.new_page()
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            if response is not None and response.status >= 400:
                raise PlaywrightError(f"HTTP {response.status} for {url}")
            if wait_for:
                try:
                    await page.wait_for_selector(wait_for, timeout=min(timeout_ms, 10000))
                except PlaywrightTimeoutError:
                    # Empty or far-away pages legitimately have no items.
                    logger.debug("no %s on %s", wait_for, url)
            return await page.content()
        finally:
            await page.close()


async def _abort_route(route: Route) -> None:
    await route.abort()
