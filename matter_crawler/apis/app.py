from __future__ import annotations

from typing import Any, Dict, Optional
import logging

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from ..config import CrawlerConfig
from ..engine import CrawlerEngine
from ..errors import DiscoveryError
from ..gaps import GapDetector
from ..storage.sqlalchemy_sink import SQLAlchemySink
from ..version import __version__

logger = logging.getLogger(__name__)

app = FastAPI(title="matter_crawler API", version=__version__)

_engine: Optional[CrawlerEngine] = None


class CrawlRequest(BaseModel):
    pages: Optional[str] = None  # e.g. "1~12, 34"; planned range when omitted
    page_range_limit: Optional[int] = None
    crawler_type: Optional[str] = None
    batch_size: Optional[int] = None
    auto_add_to_local_db: Optional[bool] = None


def get_engine() -> CrawlerEngine:
    """One engine per process, built from CRAWLER_* environment variables."""
    global _engine
    if _engine is None:
        cfg = CrawlerConfig.from_env()
        cfg.validate()
        _engine = CrawlerEngine(cfg, SQLAlchemySink(cfg.database_url))
    return _engine


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/status")
async def status(engine: CrawlerEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        result = await engine.check_crawling_status()
    except DiscoveryError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    latest = engine.progress.latest
    return {
        **result.to_dict(),
        "running": engine.is_running,
        "progress": latest.to_dict() if latest else None,
    }


@app.post("/crawl")
async def crawl(req: CrawlRequest, engine: CrawlerEngine = Depends(get_engine)) -> Dict[str, Any]:
    if engine.is_running:
        raise HTTPException(status_code=409, detail="a crawl is already running")

    base = engine.config
    engine.config = base.with_overrides(
        page_range_limit=req.page_range_limit,
        crawler_type=req.crawler_type,
        batch_size=req.batch_size,
        auto_add_to_local_db=req.auto_add_to_local_db,
    )
    try:
        engine.config.validate()
    except ValueError as exc:
        engine.config = base
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        if req.pages:
            outcome = await engine.crawl_pages(req.pages)
        else:
            outcome = await engine.start_crawling()
    finally:
        engine.config = base
    return outcome.to_dict()


@app.post("/stop")
async def stop(engine: CrawlerEngine = Depends(get_engine)) -> Dict[str, bool]:
    return {"stopping": engine.stop()}


@app.get("/gaps")
async def gaps(engine: CrawlerEngine = Depends(get_engine)) -> Dict[str, Any]:
    return GapDetector(engine.sink).detect(engine.config.products_per_page).to_dict()
