import asyncio

import pytest

from conftest import make_entity
from matter_crawler.adapters.csa_iot import CsaIotAdapter
from matter_crawler.errors import DetailFetchError, DiscoveryError, PageFetchError
from matter_crawler.strategies.base import TotalPagesCache, create_strategy, discover_total_pages
from matter_crawler.strategies.http_strategy import HttpFetchStrategy


def listing(page_numbers=(), items=12):
    links = "".join(f'<a href="?paged={n}"><span>{n}</span></a>' for n in page_numbers)
    articles = "".join(
        f'<article><a href="/csa_product/item-{i}/"><h3 class="entry-title">Item {i}</h3></a></article>'
        for i in range(items)
    )
    return (
        f'<html><body><div class="pagination-wrapper"><nav><div>{links}</div></nav></div>'
        f'<div class="post-feed">{articles}</div></body></html>'
    )


def pages_loader(pages, failures=0):
    """Serve listing HTML by page number (None = landing page)."""
    calls = []

    async def load(page):
        calls.append(page)
        if len(calls) <= failures:
            raise PageFetchError(page or 1, "flaky")
        return pages[page]

    return load, calls


def discover(load):
    return asyncio.run(discover_total_pages(load, CsaIotAdapter(), retry_delay=0, max_delay=0))


class TestDiscoverTotalPages:
    def test_reads_pagination_and_last_page(self):
        load, calls = pages_loader({None: listing((1, 2, 9)), 9: listing(items=5)})
        assert discover(load) == (9, 5)
        assert calls == [None, 9]

    def test_falls_back_to_probe_page(self):
        load, calls = pages_loader({None: listing(), 400: listing((1, 30)), 30: listing(items=3)})
        assert discover(load) == (30, 3)
        assert calls == [None, 400, 30]

    def test_single_page_site(self):
        load, _ = pages_loader({None: listing(items=4), 400: listing(items=0)})
        assert discover(load) == (1, 4)

    def test_retries_transient_failures(self):
        load, calls = pages_loader({None: listing((1, 3)), 3: listing(items=12)}, failures=2)
        assert discover(load) == (3, 12)

    def test_nothing_found_is_discovery_error(self):
        load, calls = pages_loader({None: listing(items=0), 400: listing(items=0)})
        with pytest.raises(DiscoveryError):
            discover(load)
        assert calls.count(None) == 3


class TestTotalPagesCache:
    def test_caches_until_forced(self):
        cache = TotalPagesCache(ttl_seconds=60)
        calls = []

        async def fetch():
            calls.append(1)
            return (10, 4)

        async def run():
            await cache.get_or_fetch(fetch)
            await cache.get_or_fetch(fetch)
            await cache.get_or_fetch(fetch, force=True)

        asyncio.run(run())
        assert len(calls) == 2
        assert cache.get() == (10, 4)

    def test_expired_entry_is_invisible(self):
        cache = TotalPagesCache(ttl_seconds=0)

        async def fetch():
            return (3, 3)

        asyncio.run(cache.get_or_fetch(fetch))
        assert cache.get() is None
        assert not cache.has_valid()

    def test_invalidate(self):
        cache = TotalPagesCache(ttl_seconds=60)

        async def fetch():
            return (3, 3)

        asyncio.run(cache.get_or_fetch(fetch))
        cache.invalidate()
        assert cache.get() is None


class CustomStrategy:
    name = "custom"

    def __init__(self, config, adapter=None):
        self.config = config
        self.adapter = adapter


class TestCreateStrategy:
    def test_http(self, config):
        assert isinstance(create_strategy(config), HttpFetchStrategy)

    def test_dotted_path(self, config):
        strategy = create_strategy(config.with_overrides(crawler_type="test_strategies:CustomStrategy"))
        assert isinstance(strategy, CustomStrategy)

    def test_bad_dotted_path(self, config):
        with pytest.raises(ValueError):
            create_strategy(config.with_overrides(crawler_type="test_strategies:Missing"))


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def get(self, url, headers=None, timeout=None):
        self.requested.append((url, headers))
        status, body = self.routes.get(url, (404, "not found"))
        return FakeResponse(status, body)

    async def close(self):
        raise AssertionError("an injected session must not be closed by the strategy")


class TestHttpFetchStrategy:
    def _strategy(self, config, routes):
        session = FakeSession(routes)
        adapter = CsaIotAdapter(filter_url="https://example.org/list?x=1")
        return HttpFetchStrategy(config, adapter=adapter, session=session), session

    def test_list_page(self, config):
        strategy, session = self._strategy(config, {"https://example.org/list?x=1&paged=2": (200, listing(items=3))})
        entities = asyncio.run(strategy.fetch_list_page(2))
        assert len(entities) == 3
        assert session.requested[0][1]["User-Agent"] == config.user_agent

    def test_http_error_maps_to_page_fetch_error(self, config):
        strategy, _ = self._strategy(config, {"https://example.org/list?x=1&paged=2": (503, "busy")})
        with pytest.raises(PageFetchError):
            asyncio.run(strategy.fetch_list_page(2))

    def test_total_pages(self, config):
        strategy, _ = self._strategy(
            config,
            {
                "https://example.org/list?x=1": (200, listing((1, 2))),
                "https://example.org/list?x=1&paged=2": (200, listing(items=7)),
            },
        )
        assert asyncio.run(strategy.fetch_total_pages()) == (2, 7)

    def test_detail(self, config):
        entity = make_entity(0, 0)
        html = '<html><body><h1 class="entry-title">Plug</h1></body></html>'
        strategy, _ = self._strategy(config, {entity.key: (200, html)})
        detail = asyncio.run(strategy.fetch_detail(entity))
        assert detail.key == entity.key
        assert detail.device_type == "Matter Device"

    def test_detail_error(self, config):
        strategy, _ = self._strategy(config, {})
        with pytest.raises(DetailFetchError):
            asyncio.run(strategy.fetch_detail(make_entity(0, 0)))

    def test_close_leaves_injected_session_open(self, config):
        strategy, _ = self._strategy(config, {})
        asyncio.run(strategy.close())


class TestBrowserStrategySetup:
    def test_factory_does_not_launch(self, config):
        from matter_crawler.strategies.browser_strategy import BrowserFetchStrategy

        strategy = create_strategy(config.with_overrides(crawler_type="browser"))
        assert isinstance(strategy, BrowserFetchStrategy)
        asyncio.run(strategy.close())

    def test_browsers_path_respects_user_choice(self, monkeypatch, tmp_path):
        from matter_crawler.strategies import browser_strategy

        monkeypatch.setenv("PLAYWRIGHT_BROWSERS_PATH", str(tmp_path))
        browser_strategy.configure_browsers_path()
        assert browser_strategy.os.environ["PLAYWRIGHT_BROWSERS_PATH"] == str(tmp_path)

    def test_browsers_path_default(self, monkeypatch, tmp_path):
        from matter_crawler.strategies import browser_strategy

        # setenv first so the value written by the code under test is undone afterwards
        monkeypatch.setenv("PLAYWRIGHT_BROWSERS_PATH", "placeholder")
        monkeypatch.delenv("PLAYWRIGHT_BROWSERS_PATH")
        monkeypatch.setenv("LOCALAPPDATA", str(tmp_path))
        browser_strategy.configure_browsers_path()
        expected = tmp_path / "matter-crawler" / "ms-playwright"
        assert browser_strategy.os.environ["PLAYWRIGHT_BROWSERS_PATH"] == str(expected)
