#===========================================================================
# stocksync/sync/orchestrator.py
# Checkpointed batch state machine. Every call to run_step() performs at
# most one step and persists it before returning:
#
#   step 0        ERP fetch -> warehouse names -> global filter preview
#                 -> mappings -> inventory cache             (fetching)
#   step 1..N     one storefront site each                   (syncing)
#   step N+1      aggregate, bookkeeping, notify              (completed)
#
# A failure in step 0 (or a lost inventory cache) fails the batch, except an
# unreadable mapping source, which leaves the batch unmapped. A failure inside
# a site step fails only that site; the batch moves on.
#===========================================================================
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksync.config import settings
from stocksync.db import get_sessionmaker, utcnow
from stocksync.erp.client import ErpClient
from stocksync.erp.models import ErpStockRecord
from stocksync.erp.transformer import extract_warehouse_ids, to_mapping_rows, to_stock_records
from stocksync.errors import ConfigurationError, StockSyncError
from stocksync.logging_filters import summarize_body
from stocksync.mapping.resolver import MappingCache, MappingIndex
from stocksync.models.sync import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_FETCHING,
    BATCH_SYNCING,
    SITE_COMPLETED,
    SITE_DONE_STATUSES,
    SITE_FAILED,
    SITE_RUNNING,
    TERMINAL_BATCH_STATUSES,
    AutoSyncConfig,
    InventoryCache,
    Site,
    SiteResult,
    SyncBatch,
)
from stocksync.notify.notifier import Notifier, aggregate_site_results
from stocksync.sync import batch_store as store
from stocksync.sync.filters import FilterConfig, merge_filter_configs, run_pipeline
from stocksync.sync.site_step import SiteStepResult, run_site_step
from stocksync.woo.client import WooStoreClient
from stocksync.woo.product_cache import ProductDetector

logger = logging.getLogger("stocksync.batch")

ClientFactory = Callable[[Site], WooStoreClient]


def default_client_factory(site: Site) -> WooStoreClient:
    return WooStoreClient(site.url, site.api_key, site.api_secret, name=site.name)


class StepReport(BaseModel):
    action: str  # disabled | idle | in_progress | fetched | site | advanced | completed | failed
    batch_id: Optional[str] = None
    status: Optional[str] = None
    current_step: int = 0
    total_sites: int = 0
    message: str = ""
    has_more: bool = False


class BatchOrchestrator:
    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        erp_client: ErpClient | None = None,
        client_factory: ClientFactory | None = None,
        notifier: Notifier | None = None,
        mapping_cache: MappingCache | None = None,
        group: str | None = None,
        ttl_minutes: int | None = None,
        stale_seconds: int | None = None,
        item_delay: float | None = None,
        fanout_delay: float | None = None,
        low_stock_band: int | None = None,
        product_cache_ttl_minutes: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sessionmaker = sessionmaker or get_sessionmaker()
        self.erp = erp_client or ErpClient()
        self.client_factory = client_factory or default_client_factory
        self.notifier = notifier or Notifier()
        self.mapping_cache = mapping_cache or MappingCache(settings.MAPPING_CACHE_TTL_SECONDS)
        self.group = group or settings.SYNC_GROUP
        self.ttl = timedelta(minutes=ttl_minutes or settings.BATCH_TTL_MINUTES)
        self.stale_seconds = settings.SITE_STEP_STALE_SECONDS if stale_seconds is None else stale_seconds
        self.item_delay = item_delay
        self.fanout_delay = fanout_delay
        self.low_stock_band = low_stock_band
        self.product_cache_ttl_minutes = product_cache_ttl_minutes
        self.clock = clock

    # ---- Entry point ----

    async def run_step(self, manual: bool = False) -> StepReport:
        """
        Find or create the active batch of this sync group and run its next step.
        Scheduled calls (manual=False) do not start a new batch while auto sync is disabled.
        """
        async with self.sessionmaker() as session:
            now = self.clock()
            config = await store.get_sync_config(session, self.group)
            await store.release_expired_batches(session, self.group, now)
            batch = await store.find_active_batch(session, self.group, now)
            if batch is None:
                if not manual and not config.enabled:
                    logger.info("[BATCH] auto sync disabled for group %s", self.group)
                    return StepReport(action="disabled", message="auto sync disabled")
                sites = await store.list_sync_sites(session, config.site_ids)
                batch = await store.create_batch(session, self.group, sites, now, self.ttl)
                if batch is None:
                    await session.refresh(config)
                    batch = await store.find_active_batch(session, self.group, now)
                    if batch is None:
                        return StepReport(action="idle", message="active batch held by another invocation")
            return await self._dispatch(session, config, batch)

    async def _dispatch(self, session: AsyncSession, config: AutoSyncConfig, batch: SyncBatch) -> StepReport:
        if batch.current_step == 0:
            return await self._step_fetch(session, config, batch)
        if batch.current_step <= batch.total_sites:
            return await self._step_site(session, config, batch, batch.current_step)
        return await self._step_complete(session, config, batch)

    # ---- Helpers ----

    def _report(self, action: str, batch: SyncBatch, message: str = "") -> StepReport:
        return StepReport(
            action=action,
            batch_id=batch.id,
            status=batch.status,
            current_step=batch.current_step,
            total_sites=batch.total_sites,
            message=message,
            has_more=batch.status not in TERMINAL_BATCH_STATUSES and action != "in_progress",
        )

    def _is_fresh(self, started_at: Optional[datetime]) -> bool:
        return started_at is not None and (self.clock() - started_at).total_seconds() < self.stale_seconds

    async def _notify(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except Exception:
            logger.exception("[NOTIFY] notification raised; batch result unaffected")

    async def _load_mapping(self) -> MappingIndex:
        async def loader():
            return to_mapping_rows(await self.erp.fetch_sku_mappings())
        return await self.mapping_cache.get_or_load(loader)

    async def _load_mapping_or_unmapped(self, batch: SyncBatch) -> tuple[MappingIndex, Optional[str]]:
        """A mapping source that cannot be read leaves the batch running on raw ERP SKUs."""
        try:
            mapping = await self._load_mapping()
        except Exception as e:
            error = summarize_body(str(e) or e.__class__.__name__, 500)
            logger.warning("[STEP0] batch %s: SKU mappings unavailable, syncing unmapped: %s", batch.id, error)
            return MappingIndex(), error
        if mapping.is_empty:
            logger.info("[STEP0] batch %s: no SKU mappings, storefront SKUs equal ERP SKUs", batch.id)
        return mapping, None

    async def _fail_batch(self, session: AsyncSession, config: AutoSyncConfig, batch: SyncBatch, message: str) -> StepReport:
        now = self.clock()
        batch.status = BATCH_FAILED
        batch.error_message = summarize_body(message, 500)
        batch.completed_at = now
        batch.active_slot = None
        config.last_run_at = now
        config.last_run_status = BATCH_FAILED
        config.last_run_summary = {"batch_id": batch.id, "error": batch.error_message}
        await session.commit()
        logger.error("[BATCH] %s failed at step %d: %s", batch.id, batch.current_step, batch.error_message)
        await self._notify(self.notifier.notify_failed(config, batch))
        return self._report("failed", batch, batch.error_message or "")

    # ---- Step 0 ----

    async def _step_fetch(self, session: AsyncSession, config: AutoSyncConfig, batch: SyncBatch) -> StepReport:
        if batch.status == BATCH_FETCHING and self._is_fresh(batch.started_at):
            return self._report("in_progress", batch, "ERP fetch in progress")
        batch.status = BATCH_FETCHING
        batch.started_at = self.clock()
        await session.commit()
        logger.info("[STEP0] batch %s: fetching ERP inventory", batch.id)

        try:
            if batch.total_sites == 0:
                raise ConfigurationError("no enabled sites configured")
            self.erp.ensure_configured()
            raw = await self.erp.fetch_all_inventory()
            names = await self.erp.fetch_warehouse_names(extract_warehouse_ids(raw))
            records = to_stock_records(raw, names)
            global_cfg = FilterConfig.model_validate(config.filters or {})
            preview = run_pipeline(records, global_cfg, label="global")
            mapping, mapping_error = await self._load_mapping_or_unmapped(batch)

            cache = await store.write_inventory_cache(
                session,
                batch,
                [r.model_dump() for r in records],
                mapping.to_rows(),
                global_cfg.model_dump(),
            )
            batch.inventory_cache_id = cache.id
            stats = {
                "erp_rows": len(raw),
                "records": len(records),
                "warehouses": len(names),
                "global_filtered": len(preview.items),
                "mapped_storefront_skus": len(mapping),
            }
            if mapping_error:
                stats["mapping_error"] = mapping_error
            batch.stats = stats
            batch.status = BATCH_SYNCING
            batch.current_step = 1
            await session.commit()
        except Exception as e:
            logger.exception("[STEP0] batch %s: fetch failed", batch.id)
            await session.rollback()
            await session.refresh(batch)
            await session.refresh(config)
            return await self._fail_batch(session, config, batch, str(e) or e.__class__.__name__)

        logger.info("[STEP0] batch %s: cached %d records, %d mappings", batch.id, len(records), len(mapping))
        return self._report("fetched", batch, f"cached {len(records)} inventory records")

    # ---- Step 1..N ----

    async def _advance(self, session: AsyncSession, batch: SyncBatch, step: int, action: str, message: str = "") -> StepReport:
        batch.current_step = step + 1
        await session.commit()
        return self._report(action, batch, message)

    async def _step_site(self, session: AsyncSession, config: AutoSyncConfig, batch: SyncBatch, step: int) -> StepReport:
        result = await store.get_site_result(session, batch.id, step)
        if result is None:
            logger.warning("[SITE] batch %s has no result row for step %d; advancing", batch.id, step)
            return await self._advance(session, batch, step, "advanced", "missing site result")
        if result.status in SITE_DONE_STATUSES:
            # a previous invocation finished this site but did not advance
            return await self._advance(session, batch, step, "advanced", f"site {result.site_name} already {result.status}")
        if result.status == SITE_RUNNING and self._is_fresh(result.started_at):
            return self._report("in_progress", batch, f"site {result.site_name} in progress")

        now = self.clock()
        cache = await store.load_inventory_cache(session, batch, now)
        if cache is None:
            result.status = SITE_FAILED
            result.error_message = "inventory cache missing or expired"
            result.completed_at = now
            return await self._fail_batch(session, config, batch, "inventory cache missing or expired")

        result.status = SITE_RUNNING
        result.started_at = now
        await session.commit()
        logger.info("[SITE] batch %s step %d/%d: %s", batch.id, step, batch.total_sites, result.site_name)

        try:
            outcome = await self._run_site(session, config, result, cache)
        except Exception as e:
            logger.exception("[SITE] batch %s: site %s failed", batch.id, result.site_name)
            await session.rollback()
            await session.refresh(result)
            await session.refresh(batch)
            result.status = SITE_FAILED
            result.error_message = summarize_body(str(e) or e.__class__.__name__, 500)
        else:
            result.status = SITE_COMPLETED
            result.total_checked = outcome.total_checked
            result.synced_to_instock = outcome.synced_to_instock
            result.synced_to_outofstock = outcome.synced_to_outofstock
            result.synced_quantity = outcome.synced_quantity
            result.failed = outcome.failed
            result.skipped = outcome.skipped
            result.details = outcome.details
            result.diagnostics = outcome.diagnostics
        result.completed_at = self.clock()
        return await self._advance(session, batch, step, "site", f"site {result.site_name} {result.status}")

    async def _run_site(
        self,
        session: AsyncSession,
        config: AutoSyncConfig,
        result: SiteResult,
        cache: InventoryCache,
    ) -> SiteStepResult:
        site = await store.get_site(session, result.site_id)
        if site is None:
            raise StockSyncError(f"site {result.site_id} no longer exists")
        records = [ErpStockRecord.model_validate(r) for r in cache.inventory_data or []]
        global_cfg = FilterConfig.model_validate(cache.filter_config or {})
        site_cfg = await store.get_site_filter(session, site.id)
        client = self.client_factory(site)
        return await run_site_step(
            site_name=site.name,
            records=records,
            mapping=MappingIndex.from_rows(cache.sku_mappings or []),
            config=merge_filter_configs(global_cfg, site_cfg),
            client=client,
            detector=ProductDetector(self.sessionmaker, site.id, client, self.product_cache_ttl_minutes),
            allow_to_instock=config.allow_sync_to_instock,
            allow_to_outofstock=config.allow_sync_to_outofstock,
            low_stock_band=self.low_stock_band,
            item_delay=self.item_delay,
            fanout_delay=self.fanout_delay,
        )

    # ---- Step N+1 ----

    async def _step_complete(self, session: AsyncSession, config: AutoSyncConfig, batch: SyncBatch) -> StepReport:
        results = await store.get_site_results(session, batch.id)
        now = self.clock()
        summary = aggregate_site_results(results, batch.started_at or batch.created_at, now)
        batch.stats = {**(batch.stats or {}), "summary": summary.model_dump()}
        batch.status = BATCH_COMPLETED
        batch.completed_at = now
        batch.active_slot = None
        config.last_run_at = now
        config.last_run_status = summary.overall_status
        config.last_run_summary = {"batch_id": batch.id, **summary.model_dump()}
        await session.commit()
        logger.info(
            "[BATCH] %s completed (%s): checked=%d instock=%d outofstock=%d quantity=%d failed=%d",
            batch.id, summary.overall_status, summary.total_checked, summary.synced_to_instock,
            summary.synced_to_outofstock, summary.synced_quantity, summary.failed,
        )
        await self._notify(self.notifier.notify_completed(config, batch, results, summary))
        return self._report("completed", batch, summary.overall_status)


_orchestrator: Optional[BatchOrchestrator] = None


def get_orchestrator() -> BatchOrchestrator:
    """Process-wide orchestrator, so the mapping cache survives between steps."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = BatchOrchestrator()
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None
