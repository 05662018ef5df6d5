"""
SQLAlchemy tables for the product catalog.

products         one row per listing entry, keyed by URL, positioned by (page_id, index_in_page)
product_details  enriched certificate data for a product
run_metadata     single-row summary written at the end of each run
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ProductRecord(Base):
    __tablename__ = "products"

    url: Mapped[str] = mapped_column(String(512), primary_key=True)
    manufacturer: Mapped[Optional[str]] = mapped_column(String(255))
    model: Mapped[Optional[str]] = mapped_column(String(255))
    certificate_id: Mapped[Optional[str]] = mapped_column(String(120))
    page_id: Mapped[int] = mapped_column(Integer, nullable=False)
    index_in_page: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_products_page", "page_id", "index_in_page"),)


class ProductDetailRecord(Base):
    __tablename__ = "product_details"

    url: Mapped[str] = mapped_column(String(512), primary_key=True)
    page_id: Mapped[int] = mapped_column(Integer, nullable=False)
    index_in_page: Mapped[int] = mapped_column(Integer, nullable=False)
    manufacturer: Mapped[Optional[str]] = mapped_column(String(255))
    model: Mapped[Optional[str]] = mapped_column(String(255))
    device_type: Mapped[Optional[str]] = mapped_column(String(255))
    certificate_id: Mapped[Optional[str]] = mapped_column(String(120))
    certification_date: Mapped[Optional[str]] = mapped_column(String(64))
    software_version: Mapped[Optional[str]] = mapped_column(String(120))
    hardware_version: Mapped[Optional[str]] = mapped_column(String(120))
    vid: Mapped[Optional[str]] = mapped_column(String(16))
    pid: Mapped[Optional[str]] = mapped_column(String(16))
    family_sku: Mapped[Optional[str]] = mapped_column(String(255))
    family_variant_sku: Mapped[Optional[str]] = mapped_column(String(255))
    firmware_version: Mapped[Optional[str]] = mapped_column(String(120))
    family_id: Mapped[Optional[str]] = mapped_column(String(120))
    tis_trp_tested: Mapped[Optional[str]] = mapped_column(String(32))
    specification_version: Mapped[Optional[str]] = mapped_column(String(32))
    transport_interface: Mapped[Optional[str]] = mapped_column(String(255))
    primary_device_type_id: Mapped[Optional[str]] = mapped_column(String(64))
    # JSON-encoded list of strings
    application_categories: Mapped[str] = mapped_column(Text, default="[]")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RunMetadataRecord(Base):
    __tablename__ = "run_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
