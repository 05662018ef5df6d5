from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .batch import BatchOrchestrator
from .collectors.detail_collector import DetailCollector
from .collectors.list_collector import ListCollector
from .collectors.validation import ValidationCollector, validate_crawling_range
from .config import CrawlerConfig
from .errors import CancellationError, DiscoveryError, PersistenceError
from .gaps import GapDetector, GapReconciler
from .models import BatchPlan, CrawlingRange, DetailEntity, ListEntity, ValidationSummary
from .planner import PageLayout, parse_page_ranges, plan
from .progress import CrawlProgress, ProgressChannel, estimate_remaining, percentage
from .state import CrawlStage, CrawlState
from .storage.base import PersistenceSink
from .strategies.base import FetchStrategy, TotalPagesCache, create_strategy

logger = logging.getLogger(__name__)

SECONDS_PER_PAGE_ESTIMATE = 5

COMPLETED = "completed"
PARTIAL_SUCCESS = "partial_success"
FAILED = "failed"
STOPPED = "stopped"


@dataclass
class CrawlOutcome:
    status: str
    message: str
    counts: Dict[str, Any] = field(default_factory=dict)
    crawling_ranges: List[CrawlingRange] = field(default_factory=list)
    validation: Optional[ValidationSummary] = None
    recommendations: List[str] = field(default_factory=list)
    failed_pages: List[int] = field(default_factory=list)
    failed_page_errors: Dict[int, List[str]] = field(default_factory=dict)
    failed_products: List[str] = field(default_factory=list)
    failed_product_errors: Dict[str, List[str]] = field(default_factory=dict)
    failed_ranges: List[CrawlingRange] = field(default_factory=list)
    persistence_errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (COMPLETED, PARTIAL_SUCCESS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "counts": self.counts,
            "crawling_ranges": [r.to_dict() for r in self.crawling_ranges],
            "validation": self.validation.to_dict() if self.validation else None,
            "recommendations": list(self.recommendations),
            "failed_pages": list(self.failed_pages),
            "failed_page_errors": {str(k): v for k, v in self.failed_page_errors.items()},
            "failed_products": list(self.failed_products),
            "failed_product_errors": dict(self.failed_product_errors),
            "failed_ranges": [r.to_dict() for r in self.failed_ranges],
            "persistence_errors": list(self.persistence_errors),
        }


@dataclass
class CrawlingStatus:
    total_pages: int
    last_page_product_count: int
    site_product_count: int
    db_product_count: int
    diff: int
    need_crawling: bool
    crawling_range: CrawlingRange
    estimated_product_count: int
    estimated_time_seconds: int
    last_db_update: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pages": self.total_pages,
            "last_page_product_count": self.last_page_product_count,
            "site_product_count": self.site_product_count,
            "db_product_count": self.db_product_count,
            "diff": self.diff,
            "need_crawling": self.need_crawling,
            "crawling_range": self.crawling_range.to_dict(),
            "estimated_product_count": self.estimated_product_count,
            "estimated_time_seconds": self.estimated_time_seconds,
            "last_db_update": self.last_db_update,
        }


@dataclass
class _Run:
    """Everything that lives exactly as long as one run."""

    config: CrawlerConfig
    strategy: FetchStrategy
    cancel: asyncio.Event
    layout: Optional[PageLayout] = None
    ranges: List[CrawlingRange] = field(default_factory=list)
    entities_collected: int = 0
    validation: ValidationSummary = field(default_factory=ValidationSummary)
    failed_ranges: List[CrawlingRange] = field(default_factory=list)
    persistence_errors: List[str] = field(default_factory=list)
    details: List[DetailEntity] = field(default_factory=list)
    batch: Optional[BatchPlan] = None
    current_page: int = 0
    total_pages: int = 0
    validated: bool = False


class CrawlerEngine:
    """
    Top-level state machine for one crawl at a time.

    idle -> initializing -> list_collection -> validation -> detail_collection
    -> finalizing -> completed | failed, with stopped reachable from any
    non-terminal stage through stop().
    """

    def __init__(
        self,
        config: CrawlerConfig,
        sink: PersistenceSink,
        *,
        strategy: Optional[FetchStrategy] = None,
        progress: Optional[ProgressChannel] = None,
        strategy_factory: Callable[[CrawlerConfig], FetchStrategy] = create_strategy,
    ) -> None:
        self.config = config
        self.sink = sink
        self.progress = progress or ProgressChannel()
        self.state = CrawlState()
        self._strategy = strategy
        self._strategy_factory = strategy_factory
        self._pages_cache = TotalPagesCache(config.cache_ttl_ms / 1000)
        self._cancel: Optional[asyncio.Event] = None
        self._running = False
        self.last_outcome: Optional[CrawlOutcome] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> bool:
        """Ask the running crawl to stop. Returns False when nothing is running."""
        if not self._running or self._cancel is None:
            return False
        logger.info("Stop requested")
        self._cancel.set()
        return True

    # ---------- entry points ----------

    async def start_crawling(self) -> CrawlOutcome:
        """Regular incremental crawl of the planned range."""

        async def job(run: _Run) -> None:
            total, last = await self._discover(run)
            summary = self.sink.summary()
            cap = run.config.page_range_limit or None
            run.ranges = [plan(total, last, cap, summary.product_count, run.config.products_per_page)]
            logger.info(
                "Planned pages %s-%s (site has %s, store holds %s products)",
                run.ranges[0].start_page, run.ranges[0].end_page, total, summary.product_count,
            )
            await self._crawl_ranges(run)

        return await self._execute("crawl", job)

    async def crawl_pages(self, page_ranges: str) -> CrawlOutcome:
        """Crawl explicit site pages, e.g. "1~12, 34, 72"."""

        async def job(run: _Run) -> None:
            total, _ = await self._discover(run)
            parsed = parse_page_ranges(page_ranges, total, run.config.products_per_page)
            if not parsed.ranges:
                raise ValueError("; ".join(parsed.errors) or "no pages to crawl")
            for error in parsed.errors:
                logger.warning("Ignoring page range input: %s", error)
            run.ranges = parsed.ranges
            await self._crawl_ranges(run)

        return await self._execute("manual ranges", job)

    async def collect_gaps(self) -> CrawlOutcome:
        """Re-crawl the site pages behind holes in the stored page grid."""

        async def job(run: _Run) -> None:
            await self._discover(run)
            gaps = GapDetector(self.sink).detect(run.config.products_per_page)
            run.ranges = GapReconciler.to_ranges(gaps.missing_pages, run.layout)
            if not run.ranges:
                logger.info("No gaps to collect")
                return
            await self._crawl_ranges(run)

        return await self._execute("gap collection", job)

    async def collect_missing_details(self) -> CrawlOutcome:
        """Enrich stored products that never got a detail row."""

        async def job(run: _Run) -> None:
            missing = self.sink.find_missing_details()
            run.entities_collected = len(missing)
            if not missing:
                logger.info("Every stored product already has details")
                return
            await self._collect_details(run, missing)

        return await self._execute("missing details", job)

    async def check_crawling_status(self, force: bool = False) -> CrawlingStatus:
        """Compare the site's product count with the store without crawling anything."""
        config = self.config.freeze()
        if force or self._pages_cache.get() is None:
            if self._running:
                raise RuntimeError("cannot refresh the page count while a crawl is running")
            strategy = self._strategy or self._strategy_factory(config)
            try:
                await strategy.prepare()
                total, last = await self._pages_cache.get_or_fetch(strategy.fetch_total_pages, force=True)
            finally:
                await strategy.close()
        else:
            total, last = self._pages_cache.get()  # type: ignore[misc]

        per_page = config.products_per_page
        summary = self.sink.summary()
        site_count = (total - 1) * per_page + last
        crawl_range = plan(total, last, config.page_range_limit or None, summary.product_count, per_page)
        diff = site_count - summary.product_count
        return CrawlingStatus(
            total_pages=total,
            last_page_product_count=last,
            site_product_count=site_count,
            db_product_count=summary.product_count,
            diff=diff,
            need_crawling=diff > 0,
            crawling_range=crawl_range,
            estimated_product_count=crawl_range.page_count * per_page,
            estimated_time_seconds=crawl_range.page_count * SECONDS_PER_PAGE_ESTIMATE,
            last_db_update=summary.last_updated.isoformat() if summary.last_updated else None,
        )

    # ---------- run lifecycle ----------

    async def _execute(self, name: str, job: Callable[[_Run], Awaitable[None]]) -> CrawlOutcome:
        if self._running:
            raise RuntimeError("a crawl is already running")
        config = self.config.freeze()
        strategy = self._strategy or self._strategy_factory(config)
        self._running = True
        self._cancel = asyncio.Event()
        self.state.reset()
        run = _Run(config=config, strategy=strategy, cancel=self._cancel)
        logger.info("Starting %s with %s backend", name, getattr(run.strategy, "name", run.strategy))
        self._set_stage(run, CrawlStage.INITIALIZING, "Preparing fetch backend")

        try:
            try:
                await run.strategy.prepare()
            except (DiscoveryError, CancellationError):
                raise
            except Exception as exc:
                raise DiscoveryError(f"fetch backend could not be prepared: {exc}") from exc
            await job(run)
            outcome = self._finalize(run)
        except DiscoveryError as exc:
            outcome = self._terminate(run, CrawlStage.FAILED, FAILED, f"Initialization failed: {exc}")
        except CancellationError:
            outcome = self._terminate(run, CrawlStage.STOPPED, STOPPED, "Crawl stopped by request")
        except ValueError as exc:
            outcome = self._terminate(run, CrawlStage.FAILED, FAILED, f"Invalid crawl request: {exc}")
        except PersistenceError as exc:
            logger.error("Store unavailable during %s: %s", name, exc)
            run.persistence_errors.append(str(exc))
            if run.entities_collected:
                outcome = self._terminate(
                    run, CrawlStage.COMPLETED, PARTIAL_SUCCESS,
                    f"Collected {run.entities_collected} products before the store failed: {exc}",
                )
            else:
                outcome = self._terminate(run, CrawlStage.FAILED, FAILED, f"Store unavailable: {exc}")
        except Exception as exc:
            logger.exception("%s aborted", name)
            outcome = self._terminate(run, CrawlStage.FAILED, FAILED, f"Unexpected error: {exc!r}")
        finally:
            try:
                await run.strategy.close()
            finally:
                self._running = False

        self.last_outcome = outcome
        logger.info("%s finished: %s - %s", name, outcome.status, outcome.message)
        return outcome

    async def _discover(self, run: _Run) -> Tuple[int, int]:
        total, last = await self._pages_cache.get_or_fetch(run.strategy.fetch_total_pages, force=True)
        run.layout = PageLayout(total, last, run.config.products_per_page)
        run.total_pages = total
        return total, last

    # ---------- stages ----------

    async def _crawl_ranges(self, run: _Run) -> None:
        list_collector = ListCollector(run.strategy, self.state, run.config, run.layout, run.cancel)
        for crawl_range in run.ranges:
            if run.cancel.is_set():
                raise CancellationError("stopped between ranges")
            use_batches = (
                run.config.enable_batch_processing and crawl_range.page_count > run.config.batch_size
            )
            if use_batches:
                await self._run_batches(run, list_collector, crawl_range)
                continue

            self._set_stage(run, CrawlStage.LIST_COLLECTION, f"Collecting pages {crawl_range.start_page}-{crawl_range.end_page}")
            entities = await list_collector.collect(crawl_range, self._list_progress(run))
            if not entities and self.state.failed_pages:
                message = f"no products collected from pages {crawl_range.start_page}-{crawl_range.end_page}"
                if run.entities_collected == 0:
                    self.state.record_critical(message)
                else:
                    logger.warning("%s; earlier ranges already collected products", message)
                run.failed_ranges.append(crawl_range)
                continue
            await self._process_entities(run, entities)

    async def _run_batches(self, run: _Run, list_collector: ListCollector, crawl_range: CrawlingRange) -> None:
        def on_start(batch_plan: BatchPlan) -> None:
            run.batch = batch_plan
            self._set_stage(
                run,
                CrawlStage.LIST_COLLECTION,
                f"Batch {batch_plan.batch_number}/{batch_plan.total_batches}: pages "
                f"{batch_plan.range.start_page}-{batch_plan.range.end_page}",
            )

        async def on_collected(batch_plan: BatchPlan, entities: List[ListEntity]) -> None:
            await self._process_entities(run, entities)

        orchestrator = BatchOrchestrator(
            list_collector,
            self.state,
            on_batch_collected=on_collected,
            progress_for=lambda _plan: self._list_progress(run),
            cancel=run.cancel,
            on_batch_start=on_start,
        )
        result = await orchestrator.run(
            crawl_range,
            run.config.batch_size,
            run.config.batch_retry_limit,
            run.config.batch_delay_ms / 1000,
            run.config.batch_retry_max_delay_ms / 1000,
            collected_before=run.entities_collected,
        )
        run.failed_ranges.extend(result.failed_ranges)
        run.batch = None

    async def _process_entities(self, run: _Run, entities: List[ListEntity]) -> None:
        """validation -> list persist -> detail collection -> detail persist for one set of entities."""
        run.entities_collected += len(entities)

        self._set_stage(run, CrawlStage.VALIDATION, f"Validating {len(entities)} products")
        validation = ValidationCollector(self.sink).validate_and_filter(entities)
        summary = validation.summary
        run.validation.total += summary.total
        run.validation.new += summary.new
        run.validation.existing += summary.existing
        run.validation.duplicate += summary.duplicate
        run.validated = True

        if run.config.auto_add_to_local_db:
            self._persist(run, "products", self.sink.upsert_list_entities,
                          validation.new_products + validation.existing_products, count_new=False)

        if not validation.new_products:
            logger.info("No new products; skipping detail collection")
            return
        await self._collect_details(run, validation.new_products)

    async def _collect_details(self, run: _Run, entities: List[ListEntity]) -> None:
        self._set_stage(run, CrawlStage.DETAIL_COLLECTION, f"Collecting details for {len(entities)} products")
        collector = DetailCollector(run.strategy, self.state, run.config, run.cancel)
        batch = (run.batch.batch_number, run.batch.total_batches) if run.batch else None
        details = await collector.collect(entities, self._detail_progress(run), batch)
        run.details.extend(details)
        if run.config.auto_add_to_local_db and details:
            self._persist(run, "product details", self.sink.upsert_detail_entities, details, count_new=True)

    def _persist(self, run: _Run, what: str, upsert, entities, count_new: bool) -> None:
        try:
            result = upsert(entities)
        except PersistenceError as exc:
            logger.error("Saving %s %s failed: %s", len(entities), what, exc)
            run.persistence_errors.append(str(exc))
            self.state.record_persist(0, 0, 0, len(entities))
            return
        if count_new:
            self.state.record_persist(result.added, result.updated, result.unchanged, result.failed)
        else:
            # Only failures count from the listing rows; new/updated come from details.
            self.state.record_persist(0, 0, 0, result.failed)
        logger.info("Saved %s: %s", what, result.to_dict())

    # ---------- terminal states ----------

    def _finalize(self, run: _Run) -> CrawlOutcome:
        self._set_stage(run, CrawlStage.FINALIZING, "Finalizing")
        state = self.state

        if run.config.auto_add_to_local_db and run.entities_collected:
            try:
                self.sink.write_run_metadata(self.sink.summary().product_count)
            except PersistenceError as exc:
                run.persistence_errors.append(str(exc))

        if run.entities_collected == 0 and state.critical_failures:
            return self._terminate(
                run, CrawlStage.FAILED, FAILED,
                "No products collected: " + "; ".join(state.critical_failures),
            )

        degraded = state.has_failures or run.failed_ranges or run.persistence_errors
        status = PARTIAL_SUCCESS if degraded else COMPLETED
        message = (
            f"Collected {run.entities_collected} products, {len(run.details)} details "
            f"({state.new_items} new, {state.updated_items} updated)"
        )
        if degraded:
            message += (
                f"; {len(state.failed_pages)} failed pages, {len(state.failed_products)} failed products, "
                f"{len(run.failed_ranges)} failed batches, {len(run.persistence_errors)} save errors"
            )
        if state.critical_failures:
            message += "; critical: " + "; ".join(state.critical_failures)
        return self._terminate(run, CrawlStage.COMPLETED, status, message)

    def _terminate(self, run: _Run, stage: CrawlStage, status: str, message: str) -> CrawlOutcome:
        self.state.set_stage(stage)
        recommendations: List[str] = []
        if run.validated:
            _, recommendations = validate_crawling_range(run.validation)
        outcome = CrawlOutcome(
            status=status,
            message=message,
            counts={**self.state.snapshot(), "entities_collected": run.entities_collected,
                    "details_collected": len(run.details), "elapsed_seconds": round(self.state.elapsed, 2)},
            crawling_ranges=list(run.ranges),
            validation=run.validation if run.validated else None,
            recommendations=recommendations,
            failed_pages=sorted(self.state.failed_pages, reverse=True),
            failed_page_errors=dict(self.state.failed_page_errors),
            failed_products=sorted(self.state.failed_products),
            failed_product_errors=dict(self.state.failed_product_errors),
            failed_ranges=list(run.failed_ranges),
            persistence_errors=list(run.persistence_errors),
        )
        self._emit(run, status, message, force_percentage=100.0 if status != STOPPED else None)
        return outcome

    # ---------- progress ----------

    def _set_stage(self, run: _Run, stage: CrawlStage, message: str) -> None:
        self.state.set_stage(stage)
        self._emit(run, stage.value, message)

    def _emit(self, run: _Run, step: str, message: str, force_percentage: Optional[float] = None, **extra: Any) -> None:
        state = self.state
        done, total = extra.pop("done", state.processed_items), extra.pop("total", state.total_items)
        pct = force_percentage if force_percentage is not None else percentage(done, total)
        self.progress.emit(
            CrawlProgress(
                stage=state.stage.value,
                step=step,
                message=message,
                percentage=pct,
                current_page=extra.pop("current_page", run.current_page),
                total_pages=extra.pop("total_pages", run.total_pages),
                processed_items=state.processed_items,
                total_items=state.total_items,
                new_items=state.new_items,
                updated_items=state.updated_items,
                retry_count=extra.pop("retry_count", sum(state.retry_counts.values())),
                current_batch=run.batch.batch_number if run.batch else None,
                total_batches=run.batch.total_batches if run.batch else None,
                elapsed_time=round(state.elapsed, 2),
                remaining_time=estimate_remaining(state.elapsed, done, total),
            )
        )

    def _list_progress(self, run: _Run):
        def on_progress(succeeded: int, total: int, statuses: Dict[int, str], retries: int,
                        stage_start: float, is_complete: bool) -> None:
            run.current_page = succeeded
            self._emit(
                run,
                "list_complete" if is_complete else "list_page",
                f"{succeeded}/{total} pages collected",
                done=succeeded,
                total=total,
                current_page=succeeded,
                total_pages=total,
                retry_count=retries,
            )

        return on_progress

    def _detail_progress(self, run: _Run):
        def on_progress(processed: int, total: int, succeeded: int, retries: int,
                        stage_start: float, is_complete: bool, batch) -> None:
            self._emit(
                run,
                "detail_complete" if is_complete else "detail_item",
                f"{processed}/{total} product details processed",
                done=processed,
                total=total,
                retry_count=retries,
            )

        return on_progress
