import json

import pytest

from matter_crawler.config import CrawlerConfig, migrate_config
from matter_crawler.version import CONFIG_SCHEMA_VERSION


class TestCrawlerConfig:
    def test_defaults(self):
        cfg = CrawlerConfig()
        assert cfg.crawler_type == "http"
        assert cfg.products_per_page == 12
        assert cfg.batch_size == 30
        assert cfg.schema_version == CONFIG_SCHEMA_VERSION

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CRAWLER_PAGE_RANGE_LIMIT", "25")
        monkeypatch.setenv("CRAWLER_ENABLE_BATCH_PROCESSING", "false")
        monkeypatch.setenv("CRAWLER_CRAWLER_TYPE", "browser")
        cfg = CrawlerConfig.from_env()
        assert cfg.page_range_limit == 25
        assert cfg.enable_batch_processing is False
        assert cfg.crawler_type == "browser"

    def test_from_file_migrates_v1(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"retries": 5, "request_timeout": 30, "max_concurrency": 8, "obsolete": 1}))
        cfg = CrawlerConfig.from_file(path)
        assert cfg.product_list_retry_count == 5
        assert cfg.product_detail_retry_count == 5
        assert cfg.page_timeout_ms == 30000
        assert cfg.initial_concurrency == 8
        assert cfg.schema_version == 2

    def test_migrate_keeps_current_schema(self):
        data = migrate_config({"schema_version": 2, "batch_size": 10})
        assert data == {"schema_version": 2, "batch_size": 10}

    def test_freeze_is_independent_copy(self):
        cfg = CrawlerConfig()
        frozen = cfg.freeze()
        cfg.batch_size = 99
        assert frozen.batch_size == 30

    def test_with_overrides_ignores_none(self):
        cfg = CrawlerConfig().with_overrides(batch_size=5, page_range_limit=None)
        assert cfg.batch_size == 5
        assert cfg.page_range_limit == 10

    @pytest.mark.parametrize(
        "overrides",
        [
            {"crawler_type": "selenium"},
            {"page_range_limit": -1},
            {"batch_size": 0},
            {"initial_concurrency": 0},
            {"min_request_delay_ms": 500, "max_request_delay_ms": 100},
            {"product_list_retry_count": -1},
        ],
    )
    def test_validate_rejects(self, overrides):
        with pytest.raises(ValueError):
            CrawlerConfig(database_url="sqlite://", **overrides).validate()

    def test_validate_creates_sqlite_directory(self, tmp_path):
        db = tmp_path / "nested" / "products.sqlite"
        CrawlerConfig(database_url=f"sqlite:///{db}").validate()
        assert db.parent.is_dir()

    def test_custom_strategy_path_allowed(self):
        CrawlerConfig(database_url="sqlite://", crawler_type="my_pkg.backends:Backend").validate()
