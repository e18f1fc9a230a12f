#===========================================================================
# stocksync/sync/batch_store.py
# Relational store operations for batches, per-site results, the inventory
# cache and the sync / site filter configuration rows.
#===========================================================================
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stocksync.models.sync import (
    ACTIVE_BATCH_STATUSES,
    BATCH_PENDING,
    AutoSyncConfig,
    InventoryCache,
    Site,
    SiteFilter,
    SiteResult,
    SyncBatch,
)
from stocksync.sync.filters import FilterConfig

logger = logging.getLogger("stocksync.batch")


# ---- Configuration rows ----

async def get_sync_config(session: AsyncSession, group: str) -> AutoSyncConfig:
    cfg = (await session.execute(
        select(AutoSyncConfig).where(AutoSyncConfig.name == group)
    )).scalar_one_or_none()
    if cfg is None:
        cfg = AutoSyncConfig(name=group)
        session.add(cfg)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            cfg = (await session.execute(
                select(AutoSyncConfig).where(AutoSyncConfig.name == group)
            )).scalar_one()
    return cfg


async def list_sync_sites(session: AsyncSession, site_ids: Sequence[str] | None) -> List[Site]:
    """Enabled sites; the configured id order is kept when ids are given."""
    q = select(Site).where(Site.enabled.is_(True))
    if site_ids:
        q = q.where(Site.id.in_(list(site_ids)))
        rows = {s.id: s for s in (await session.execute(q)).scalars()}
        return [rows[i] for i in site_ids if i in rows]
    return list((await session.execute(q.order_by(Site.created_at, Site.name))).scalars())


async def get_site(session: AsyncSession, site_id: str) -> Optional[Site]:
    return await session.get(Site, site_id)


def site_filter_config(row: SiteFilter) -> FilterConfig:
    rules = row.sync_rules or {}
    return FilterConfig.model_validate({
        "sku_whitelist": row.sku_filter,
        "exclude_sku_prefixes": row.exclude_sku_prefixes,
        "category_filters": row.category_filters,
        "exclude_warehouses": row.exclude_warehouses,
        "sku_warehouse_rules": rules.get("sku_warehouse_rules") or {},
        "instock_threshold": rules.get("instock_threshold") or {},
    })


async def get_site_filter(session: AsyncSession, site_id: str) -> Optional[FilterConfig]:
    row = (await session.execute(
        select(SiteFilter).where(SiteFilter.site_id == site_id)
    )).scalar_one_or_none()
    return site_filter_config(row) if row is not None else None


# ---- Batches ----

async def find_active_batch(session: AsyncSession, group: str, now: datetime) -> Optional[SyncBatch]:
    return (await session.execute(
        select(SyncBatch)
        .where(
            SyncBatch.sync_group == group,
            SyncBatch.status.in_(ACTIVE_BATCH_STATUSES),
            SyncBatch.expires_at > now,
        )
        .order_by(SyncBatch.created_at.desc())
        .limit(1)
    )).scalar_one_or_none()


async def release_expired_batches(session: AsyncSession, group: str, now: datetime) -> int:
    """Expired batches give up the active slot; their status is left untouched."""
    res = await session.execute(
        update(SyncBatch)
        .where(SyncBatch.active_slot == group, SyncBatch.expires_at <= now)
        .values(active_slot=None)
    )
    if res.rowcount:
        logger.info("[BATCH] released %d expired batch(es) in group %s", res.rowcount, group)
        await session.commit()
    return res.rowcount or 0


async def create_batch(
    session: AsyncSession,
    group: str,
    sites: Sequence[Site],
    now: datetime,
    ttl: timedelta,
) -> Optional[SyncBatch]:
    """
    Conditional insert: the unique active_slot lets only one invocation win.
    Returns None when another invocation already holds the slot.
    """
    batch = SyncBatch(
        sync_group=group,
        active_slot=group,
        status=BATCH_PENDING,
        current_step=0,
        total_sites=len(sites),
        site_ids=[s.id for s in sites],
        stats={},
        created_at=now,
        expires_at=now + ttl,
    )
    session.add(batch)
    try:
        await session.flush()
        for idx, site in enumerate(sites, start=1):
            session.add(SiteResult(batch_id=batch.id, site_id=site.id, site_name=site.name, step_index=idx))
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("[BATCH] another invocation created the active batch for group %s", group)
        return None
    logger.info("[BATCH] created %s for %d site(s), expires %s", batch.id, len(sites), batch.expires_at.isoformat())
    return batch


async def get_batch(session: AsyncSession, batch_id: str) -> Optional[SyncBatch]:
    return await session.get(SyncBatch, batch_id)


async def get_site_results(session: AsyncSession, batch_id: str) -> List[SiteResult]:
    return list((await session.execute(
        select(SiteResult).where(SiteResult.batch_id == batch_id).order_by(SiteResult.step_index)
    )).scalars())


async def get_site_result(session: AsyncSession, batch_id: str, step_index: int) -> Optional[SiteResult]:
    return (await session.execute(
        select(SiteResult).where(SiteResult.batch_id == batch_id, SiteResult.step_index == step_index)
    )).scalar_one_or_none()


# ---- Inventory cache ----

async def write_inventory_cache(
    session: AsyncSession,
    batch: SyncBatch,
    inventory: List[Dict[str, Any]],
    mappings: List[Dict[str, Any]],
    filter_config: Dict[str, Any],
) -> InventoryCache:
    """Written once per batch; a retried step 0 replaces its own earlier snapshot."""
    cache = (await session.execute(
        select(InventoryCache).where(InventoryCache.batch_id == batch.id)
    )).scalar_one_or_none()
    if cache is None:
        cache = InventoryCache(batch_id=batch.id, expires_at=batch.expires_at)
        session.add(cache)
    cache.inventory_data = inventory
    cache.sku_mappings = mappings
    cache.filter_config = filter_config
    cache.expires_at = batch.expires_at
    await session.flush()
    return cache


async def load_inventory_cache(session: AsyncSession, batch: SyncBatch, now: datetime) -> Optional[InventoryCache]:
    if not batch.inventory_cache_id:
        return None
    cache = await session.get(InventoryCache, batch.inventory_cache_id)
    if cache is None or cache.expires_at <= now:
        return None
    return cache
