import pytest
from fastapi.testclient import TestClient

from conftest import FakeStrategy, make_entity
from matter_crawler.apis.app import app, get_engine
from matter_crawler.engine import CrawlerEngine


@pytest.fixture
def engine(config, sink):
    return CrawlerEngine(config, sink, strategy=FakeStrategy(total_pages=3, last_page_count=5))


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestApi:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}

    def test_status(self, client):
        r = client.get("/status")
        assert r.status_code == 200
        data = r.json()
        assert data["site_product_count"] == 29
        assert data["need_crawling"] is True
        assert data["running"] is False
        assert data["crawling_range"] == {"start_page": 3, "end_page": 1}

    def test_crawl_then_gaps(self, client, sink):
        r = client.post("/crawl", json={})
        assert r.status_code == 200
        assert r.json()["status"] == "completed"
        assert sink.summary().product_count == 29

        # Only the newest page_id is short: 29 products fill two pages plus five.
        gaps = client.get("/gaps").json()
        assert [g["page_id"] for g in gaps["missing_pages"]] == [2]
        assert gaps["total_missing_products"] == 7

    def test_crawl_selected_pages(self, client, sink):
        r = client.post("/crawl", json={"pages": "1"})
        assert r.json()["crawling_ranges"] == [{"start_page": 1, "end_page": 1}]
        assert sink.summary().product_count == 12

    def test_invalid_override_rejected(self, client, engine):
        r = client.post("/crawl", json={"batch_size": 0})
        assert r.status_code == 422
        assert engine.config.batch_size == 30

    def test_gaps_report(self, client, sink):
        sink.upsert_list_entities([make_entity(1, i) for i in range(12)])
        data = client.get("/gaps").json()
        assert data["completely_missing_page_ids"] == [0]

    def test_stop_when_idle(self, client):
        assert client.post("/stop").json() == {"stopping": False}
