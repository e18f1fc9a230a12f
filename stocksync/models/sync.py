# stocksync/models/sync.py
from __future__ import annotations
import uuid
from datetime import datetime
from typing import Any
from sqlalchemy import String, Integer, DateTime, Text, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from stocksync.db import Base, utcnow

# Batch lifecycle
BATCH_PENDING = "pending"
BATCH_FETCHING = "fetching"
BATCH_SYNCING = "syncing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
ACTIVE_BATCH_STATUSES = (BATCH_PENDING, BATCH_FETCHING, BATCH_SYNCING)
TERMINAL_BATCH_STATUSES = (BATCH_COMPLETED, BATCH_FAILED)

# Per-site result lifecycle
SITE_PENDING = "pending"
SITE_RUNNING = "running"
SITE_COMPLETED = "completed"
SITE_FAILED = "failed"
SITE_DONE_STATUSES = (SITE_COMPLETED, SITE_FAILED)


def _uuid() -> str:
    return str(uuid.uuid4())


class SyncBatch(Base):
    __tablename__ = "sync_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    sync_group: Mapped[str] = mapped_column(String(64), default="default", index=True)
    # Equals sync_group while the batch may still run; NULL once terminal or released.
    # The unique constraint is what keeps two invocations from both creating a batch.
    active_slot: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=BATCH_PENDING, index=True)
    current_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_sites: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    site_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    inventory_cache_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    stats: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class SiteResult(Base):
    __tablename__ = "sync_site_results"
    __table_args__ = (UniqueConstraint("batch_id", "step_index", name="uq_site_result_step"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(36), index=True)
    site_id: Mapped[str] = mapped_column(String(64))
    site_name: Mapped[str] = mapped_column(String(255), default="")
    step_index: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default=SITE_PENDING)
    total_checked: Mapped[int] = mapped_column(Integer, default=0)
    synced_to_instock: Mapped[int] = mapped_column(Integer, default=0)
    synced_to_outofstock: Mapped[int] = mapped_column(Integer, default=0)
    synced_quantity: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    details: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    diagnostics: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class InventoryCache(Base):
    __tablename__ = "inventory_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    inventory_data: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    sku_mappings: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    filter_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)


class Site(Base):
    __tablename__ = "wc_sites"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    url: Mapped[str] = mapped_column(String(512))
    api_key: Mapped[str] = mapped_column(String(255))
    api_secret: Mapped[str] = mapped_column(String(255))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SiteFilter(Base):
    __tablename__ = "site_filters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    sku_filter: Mapped[str] = mapped_column(Text, default="")
    exclude_sku_prefixes: Mapped[str] = mapped_column(Text, default="")
    category_filters: Mapped[list[str]] = mapped_column(JSON, default=list)
    exclude_warehouses: Mapped[str] = mapped_column(Text, default="")
    # {"sku_warehouse_rules": {pattern: [warehouse, ...]}, "instock_threshold": {pattern: n}}
    sync_rules: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class AutoSyncConfig(Base):
    __tablename__ = "auto_sync_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, default="default")
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    site_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    filters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    allow_sync_to_instock: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_sync_to_outofstock: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_webhook_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notify_on_success: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_on_failure: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_on_no_changes: Mapped[bool] = mapped_column(Boolean, default=False)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_run_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_run_summary: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ProductCacheEntry(Base):
    __tablename__ = "wc_product_cache"
    __table_args__ = (UniqueConstraint("site_id", "sku", name="uq_product_cache_site_sku"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), index=True)
    sku: Mapped[str] = mapped_column(String(128))  # upper-cased
    product_id: Mapped[int] = mapped_column(Integer)
    parent_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    product_type: Mapped[str] = mapped_column(String(32), default="simple")
    name: Mapped[str] = mapped_column(String(512), default="")
    stock_status: Mapped[str] = mapped_column(String(32), default="")
    stock_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    manage_stock: Mapped[bool] = mapped_column(Boolean, default=False)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
