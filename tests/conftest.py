import asyncio
from collections import defaultdict
from typing import Callable, Dict, Optional

import pytest

from matter_crawler.config import CrawlerConfig
from matter_crawler.errors import DetailFetchError, DiscoveryError, PageFetchError
from matter_crawler.models import DetailEntity, ListEntity
from matter_crawler.storage.sqlalchemy_sink import SQLAlchemySink
from matter_crawler.strategies.base import ensure_not_cancelled
from matter_crawler.utils.logging import setup_logging

setup_logging("DEBUG")


def product_key(page: int, index: int) -> str:
    return f"https://csa-iot.org/csa_product/device-{page}-{index}/"


class FakeStrategy:
    """
    Scripted fetch backend. ``fail_pages`` / ``fail_details`` map a page number or key
    to how many leading attempts should fail (a large number means "always").
    """

    name = "fake"

    def __init__(
        self,
        total_pages: int = 5,
        last_page_count: int = 12,
        per_page: int = 12,
        fail_pages: Optional[Dict[int, int]] = None,
        fail_details: Optional[Dict[str, int]] = None,
        discovery_error: bool = False,
        on_list_page: Optional[Callable[[int], None]] = None,
    ):
        self.total_pages = total_pages
        self.last_page_count = last_page_count
        self.per_page = per_page
        self.fail_pages = dict(fail_pages or {})
        self.fail_details = dict(fail_details or {})
        self.discovery_error = discovery_error
        self.on_list_page = on_list_page
        self.list_calls: Dict[int, int] = defaultdict(int)
        self.detail_calls: Dict[str, int] = defaultdict(int)
        self.prepared = False
        self.closed = False

    async def prepare(self):
        self.prepared = True

    async def fetch_total_pages(self):
        if self.discovery_error:
            raise DiscoveryError("site unreachable")
        return self.total_pages, self.last_page_count

    async def fetch_list_page(self, page_number, cancel=None):
        ensure_not_cancelled(cancel)
        self.list_calls[page_number] += 1
        if self.on_list_page is not None:
            self.on_list_page(page_number)
        await asyncio.sleep(0)
        if self.list_calls[page_number] <= self.fail_pages.get(page_number, 0):
            raise PageFetchError(page_number, "scripted failure")
        count = self.last_page_count if page_number == self.total_pages else self.per_page
        return [
            ListEntity(
                key=product_key(page_number, i),
                manufacturer="Acme",
                model=f"Plug {page_number}-{i}",
                certificate_id=f"CSA{page_number:03d}{i:02d}MAT",
                page_id=page_number,
                index_in_page=i,
            )
            for i in range(count)
        ]

    async def fetch_detail(self, entity, cancel=None):
        ensure_not_cancelled(cancel)
        self.detail_calls[entity.key] += 1
        await asyncio.sleep(0)
        if self.detail_calls[entity.key] <= self.fail_details.get(entity.key, 0):
            raise DetailFetchError(entity.key, "scripted failure")
        return DetailEntity(
            **entity.to_dict(),
            device_type="Smart Plug",
            vid="0x1234",
            pid="0x00AB",
            application_categories=["Smart Plug"],
        )

    async def close(self):
        self.closed = True


@pytest.fixture
def config():
    return CrawlerConfig(
        database_url="sqlite://",
        page_range_limit=0,
        retry_delay_ms=0,
        retry_max_delay_ms=0,
        min_request_delay_ms=0,
        max_request_delay_ms=0,
        batch_delay_ms=0,
        batch_retry_max_delay_ms=0,
        initial_concurrency=3,
        detail_concurrency=3,
    )


@pytest.fixture
def sink():
    store = SQLAlchemySink("sqlite://")
    yield store
    store.close()


@pytest.fixture
def strategy():
    return FakeStrategy()


def make_entity(page_id=0, index=0, **overrides) -> ListEntity:
    values = dict(
        key=product_key(page_id, index),
        manufacturer="Acme",
        model=f"Plug {page_id}-{index}",
        certificate_id="CSA00001MAT",
        page_id=page_id,
        index_in_page=index,
    )
    values.update(overrides)
    return ListEntity(**values)
