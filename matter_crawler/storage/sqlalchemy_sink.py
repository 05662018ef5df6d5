"""
SQLAlchemy-backed persistence sink for the product catalog.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import PersistenceError
from ..models import DetailEntity, ListEntity
from .base import RunMetadata, StoreSummary, UpsertResult
from .models import Base, ProductDetailRecord, ProductRecord, RunMetadataRecord, utcnow

logger = logging.getLogger(__name__)

_LIST_COLUMNS = ("manufacturer", "model", "certificate_id", "page_id", "index_in_page")
_DETAIL_COLUMNS = _LIST_COLUMNS + (
    "device_type",
    "certification_date",
    "software_version",
    "hardware_version",
    "vid",
    "pid",
    "family_sku",
    "family_variant_sku",
    "firmware_version",
    "family_id",
    "tis_trp_tested",
    "specification_version",
    "transport_interface",
    "primary_device_type_id",
)


def create_db_engine(database_url: str) -> Engine:
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees a fresh empty database.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url)


class SQLAlchemySink:
    """
    Persist list and detail entities through SQLAlchemy sessions, one transaction per call.
    """

    def __init__(self, database_url: str = "sqlite://", *, engine: Optional[Engine] = None) -> None:
        self.engine = engine or create_db_engine(database_url)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Persistence failure during %s: %s", action, exc)
            raise PersistenceError(f"{action} failed: {exc}", cause=exc) from exc
        finally:
            session.close()

    # ---------- writes ----------

    def upsert_list_entities(self, entities: Iterable[ListEntity]) -> UpsertResult:
        result = UpsertResult()
        unique = _first_by_key(entities, result)
        if not unique:
            return result
        with self._transaction("upsert products") as session:
            existing = {
                r.url: r
                for r in session.scalars(select(ProductRecord).where(ProductRecord.url.in_(list(unique))))
            }
            for key, entity in unique.items():
                values = {col: getattr(entity, col) for col in _LIST_COLUMNS}
                _apply(session, ProductRecord, existing.get(key), key, values, result)
        logger.debug("products upsert: %s", result.to_dict())
        return result

    def upsert_detail_entities(self, entities: Iterable[DetailEntity]) -> UpsertResult:
        result = UpsertResult()
        unique = _first_by_key(entities, result)
        if not unique:
            return result
        with self._transaction("upsert product details") as session:
            existing = {
                r.url: r
                for r in session.scalars(
                    select(ProductDetailRecord).where(ProductDetailRecord.url.in_(list(unique)))
                )
            }
            for key, entity in unique.items():
                values = {col: getattr(entity, col) for col in _DETAIL_COLUMNS}
                values["application_categories"] = json.dumps(list(entity.application_categories))
                _apply(session, ProductDetailRecord, existing.get(key), key, values, result)
        logger.debug("product_details upsert: %s", result.to_dict())
        return result

    def write_run_metadata(self, total_count: int) -> RunMetadata:
        now = utcnow()
        with self._transaction("write run metadata") as session:
            record = session.get(RunMetadataRecord, 1)
            if record is None:
                session.add(RunMetadataRecord(id=1, last_updated=now, total_count=total_count))
            else:
                record.last_updated = now
                record.total_count = total_count
        return RunMetadata(last_updated=now, total_count=total_count)

    # ---------- reads ----------

    def read_run_metadata(self) -> Optional[RunMetadata]:
        with self._transaction("read run metadata") as session:
            record = session.get(RunMetadataRecord, 1)
            if record is None:
                return None
            return RunMetadata(last_updated=record.last_updated, total_count=record.total_count)

    def count_by_page(self, page_id: int) -> int:
        with self._transaction("count by page") as session:
            stmt = select(func.count()).select_from(ProductRecord).where(ProductRecord.page_id == page_id)
            return int(session.scalar(stmt) or 0)

    def distinct_occupied_indices(self, page_id: int) -> Set[int]:
        with self._transaction("occupied indices") as session:
            stmt = (
                select(ProductRecord.index_in_page)
                .where(ProductRecord.page_id == page_id)
                .where(ProductRecord.index_in_page.is_not(None))
                .distinct()
            )
            return set(session.scalars(stmt))

    def max_page_id(self) -> Optional[int]:
        with self._transaction("max page id") as session:
            value = session.scalar(select(func.max(ProductRecord.page_id)))
            return int(value) if value is not None else None

    def summary(self) -> StoreSummary:
        with self._transaction("summary") as session:
            count = int(session.scalar(select(func.count()).select_from(ProductRecord)) or 0)
            meta = session.get(RunMetadataRecord, 1)
            return StoreSummary(product_count=count, last_updated=meta.last_updated if meta else None)

    def detail_count(self) -> int:
        with self._transaction("detail count") as session:
            return int(session.scalar(select(func.count()).select_from(ProductDetailRecord)) or 0)

    def get_products(self, keys: Iterable[str]) -> Dict[str, ListEntity]:
        keys = list(keys)
        if not keys:
            return {}
        with self._transaction("get products") as session:
            rows = session.scalars(select(ProductRecord).where(ProductRecord.url.in_(keys)))
            return {row.url: _to_list_entity(row) for row in rows}

    def find_missing_details(self) -> List[ListEntity]:
        """Products that were listed but never enriched."""
        with self._transaction("find missing details") as session:
            stmt = (
                select(ProductRecord)
                .outerjoin(ProductDetailRecord, ProductDetailRecord.url == ProductRecord.url)
                .where(ProductDetailRecord.url.is_(None))
                .order_by(ProductRecord.page_id.desc(), ProductRecord.index_in_page.desc())
            )
            return [_to_list_entity(row) for row in session.scalars(stmt)]

    def list_details(self) -> List[DetailEntity]:
        with self._transaction("list details") as session:
            stmt = select(ProductDetailRecord).order_by(
                ProductDetailRecord.page_id.desc(), ProductDetailRecord.index_in_page.desc()
            )
            return [_to_detail_entity(row) for row in session.scalars(stmt)]

    def close(self) -> None:
        self.engine.dispose()


def _first_by_key(entities: Iterable[ListEntity], result: UpsertResult) -> Dict[str, ListEntity]:
    unique: Dict[str, ListEntity] = {}
    for entity in entities:
        if not entity.key:
            result.failed += 1
            continue
        unique.setdefault(entity.key, entity)
    return unique


def _apply(session: Session, model, record, key: str, values: Dict, result: UpsertResult) -> None:
    if record is None:
        session.add(model(url=key, **values))
        result.added += 1
        return
    changed = False
    for column, value in values.items():
        if getattr(record, column) != value:
            setattr(record, column, value)
            changed = True
    if changed:
        result.updated += 1
    else:
        result.unchanged += 1


def _to_list_entity(row: ProductRecord) -> ListEntity:
    return ListEntity(
        key=row.url,
        manufacturer=row.manufacturer,
        model=row.model,
        certificate_id=row.certificate_id,
        page_id=row.page_id,
        index_in_page=row.index_in_page,
    )


def _to_detail_entity(row: ProductDetailRecord) -> DetailEntity:
    values = {col: getattr(row, col) for col in _DETAIL_COLUMNS}
    return DetailEntity(
        key=row.url,
        application_categories=json.loads(row.application_categories or "[]"),
        **values,
    )
