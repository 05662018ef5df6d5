from __future__ import annotations

from dataclasses import dataclass, field, asdict, fields, replace
from typing import Any, Dict
from pathlib import Path
import copy
import os
import json

from .version import __version__, CONFIG_SCHEMA_VERSION

BASE_URL = "https://csa-iot.org/csa-iot_products/"
MATTER_FILTER_URL = (
    "https://csa-iot.org/csa-iot_products/"
    "?p_keywords=&p_type%5B%5D=14&p_program_type%5B%5D=1049"
    "&p_certificate=&p_family=&p_firmware_ver="
)

CRAWLER_TYPES = ("http", "browser")


@dataclass
class CrawlerConfig:
    """
    Canonical configuration object passed throughout the system.
    Keep it dataclass-only (no heavy deps) so the engine can snapshot it per run.
    """
    schema_version: int = CONFIG_SCHEMA_VERSION

    # Site
    base_url: str = BASE_URL
    matter_filter_url: str = MATTER_FILTER_URL
    user_agent: str = f"matter_crawler/{__version__}"
    # "http", "browser" or a dotted path (module:ClassName) to a custom strategy.
    crawler_type: str = "http"
    headless_browser: bool = True

    # Planning
    page_range_limit: int = 10  # 0 disables the cap
    products_per_page: int = 12

    # Retries
    product_list_retry_count: int = 3
    product_detail_retry_count: int = 3
    retry_delay_ms: int = 2500
    retry_max_delay_ms: int = 30000

    # Timeouts
    page_timeout_ms: int = 90000
    product_detail_timeout_ms: int = 60000

    # Concurrency and pacing
    initial_concurrency: int = 5
    detail_concurrency: int = 5
    min_request_delay_ms: int = 100
    max_request_delay_ms: int = 2200

    # Batching
    enable_batch_processing: bool = True
    batch_size: int = 30
    batch_delay_ms: int = 2000
    batch_retry_limit: int = 3
    batch_retry_max_delay_ms: int = 60000

    # Persistence
    auto_add_to_local_db: bool = True
    database_url: str = "sqlite:///data/matter_products.sqlite"
    cache_ttl_ms: int = 600000

    # Where `export` writes the catalog
    output_path: str = "output/matter_products.json"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def freeze(self) -> "CrawlerConfig":
        """
        Snapshot for one run. The engine only ever reads the copy, so callers may
        keep mutating their own instance while a crawl is in flight.
        """
        return copy.deepcopy(self)

    def with_overrides(self, **overrides: Any) -> "CrawlerConfig":
        """Return a copy with the non-None overrides applied."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean)

    # ---------- Loaders ----------

    @classmethod
    def from_env(cls) -> "CrawlerConfig":
        """
        Build config from environment variables (all optional).
        Every field maps to CRAWLER_<FIELD_NAME_UPPER>.
        """
        defaults = cls()
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f"CRAWLER_{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(raw, getattr(defaults, f.name))
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "CrawlerConfig":
        """
        Load configuration from a JSON file. Supports schema migration for older versions.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data = migrate_config(data)
        return cls(**data)

    # ---------- Validation ----------

    def validate(self) -> None:
        if self.crawler_type not in CRAWLER_TYPES and ":" not in self.crawler_type:
            raise ValueError(
                f"crawler_type must be one of {CRAWLER_TYPES} or a dotted 'module:ClassName' path"
            )
        if self.page_range_limit < 0:
            raise ValueError("page_range_limit must be >= 0")
        if self.products_per_page <= 0:
            raise ValueError("products_per_page must be > 0")
        for name in ("product_list_retry_count", "product_detail_retry_count", "batch_retry_limit"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.initial_concurrency <= 0 or self.detail_concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.page_timeout_ms <= 0 or self.product_detail_timeout_ms <= 0:
            raise ValueError("timeouts must be > 0")
        if self.min_request_delay_ms > self.max_request_delay_ms:
            raise ValueError("min_request_delay_ms cannot exceed max_request_delay_ms")
        # Make sure a sqlite file can be created
        if self.database_url.startswith("sqlite:///") and self.database_url != "sqlite:///:memory:":
            Path(self.database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def migrate_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Migrate config dict to the latest schema version.
    Keep this pure and additive. Add migrations here as you bump schema.
    """
    data = dict(raw)
    schema = data.get("schema_version", 1)

    if schema < 2:
        # v1 had a single retry counter and a timeout in seconds.
        retries = data.pop("retries", None)
        if retries is not None:
            data.setdefault("product_list_retry_count", retries)
            data.setdefault("product_detail_retry_count", retries)
        timeout = data.pop("request_timeout", None)
        if timeout is not None:
            data.setdefault("page_timeout_ms", int(float(timeout) * 1000))
            data.setdefault("product_detail_timeout_ms", int(float(timeout) * 1000))
        concurrency = data.pop("max_concurrency", None)
        if concurrency is not None:
            data.setdefault("initial_concurrency", concurrency)
        data["schema_version"] = 2

    known = {f.name for f in fields(CrawlerConfig)}
    data = {k: v for k, v in data.items() if k in known}
    data.setdefault("schema_version", CONFIG_SCHEMA_VERSION)
    return data
