#===========================================================================
# stocksync/sync/site_step.py
# One storefront site, one pass:
#   filter pipeline -> mapping fan-out -> product detection -> decide -> apply
# Unmerged warehouse rows collapse to one record per SKU, and a storefront
# SKU is decided at most once per pass. Counters are kept per ERP SKU.
# A fan-out where some storefront SKUs succeeded and some failed counts
# once, as failed, with "partial: x/y"; the first error seen is reported.
#===========================================================================
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from stocksync.config import settings
from stocksync.erp.models import ErpStockRecord
from stocksync.errors import classify_error
from stocksync.logging_filters import summarize_body
from stocksync.mapping.resolver import MappingIndex
from stocksync.sync.decider import decide
from stocksync.sync.executor import ExecutionOutcome, apply_decision
from stocksync.sync.filters import FilterConfig, run_pipeline
from stocksync.woo.client import WooStoreClient
from stocksync.woo.product_cache import ProductDetector

logger = logging.getLogger("stocksync.site")

# Reported action when the storefront SKUs of one ERP SKU changed in different directions
ACTION_PRIORITY = ("to_outofstock", "to_quantity", "to_instock")
DIAGNOSTIC_SKU_LIMIT = 20


class SiteStepResult(BaseModel):
    total_checked: int = 0
    synced_to_instock: int = 0
    synced_to_outofstock: int = 0
    synced_quantity: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)
    diagnostics: Dict[str, Any] = Field(default_factory=dict)

    @property
    def changes(self) -> int:
        return self.synced_to_instock + self.synced_to_outofstock + self.synced_quantity


class ItemResult(BaseModel):
    """Aggregated outcome of one ERP SKU across its storefront SKUs."""
    erp_sku: str
    status: str  # "synced" | "failed" | "skipped"
    action: Optional[str] = None
    net_stock: int = 0
    storefront_skus: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    not_found: bool = False


def aggregate_fanout(erp_sku: str, net_stock: int, outcomes: List[ExecutionOutcome]) -> ItemResult:
    attempted = [o for o in outcomes if o.action != "skip" and not o.not_found]
    succeeded = [o for o in attempted if o.ok]
    failures = [o for o in attempted if not o.ok]
    skus = [o.storefront_sku for o in outcomes]

    if failures:
        first = failures[0]
        error = first.error or "update failed"
        if succeeded:
            error = f"partial: {len(succeeded)}/{len(attempted)}; {error}"
        return ItemResult(erp_sku=erp_sku, status="failed", action=first.action,
                          net_stock=net_stock, storefront_skus=skus, error=error)
    if succeeded:
        actions = {o.action for o in succeeded}
        action = next(a for a in ACTION_PRIORITY if a in actions)
        return ItemResult(erp_sku=erp_sku, status="synced", action=action,
                          net_stock=net_stock, storefront_skus=skus)
    return ItemResult(erp_sku=erp_sku, status="skipped", net_stock=net_stock, storefront_skus=skus,
                      not_found=bool(outcomes) and all(o.not_found for o in outcomes))


async def _sync_item(
    item: ErpStockRecord,
    mapping: MappingIndex,
    config: FilterConfig,
    client: WooStoreClient,
    detector: ProductDetector,
    *,
    allow_to_instock: bool,
    allow_to_outofstock: bool,
    low_stock_band: int,
    fanout_delay: float,
    needs: Dict[str, List[str]],
    handled: Set[str],
) -> ItemResult:
    outcomes: List[ExecutionOutcome] = []
    targets = [t for t in mapping.resolve(item.sku) if t.strip().upper() not in handled]
    handled.update(t.strip().upper() for t in targets)
    for idx, sf_sku in enumerate(targets):
        if idx and fanout_delay:
            await asyncio.sleep(fanout_delay)
        try:
            product = await detector.detect(sf_sku)
        except Exception as e:
            cls = classify_error(e)
            logger.warning("[SITE] lookup %s failed (%s): %s", sf_sku, cls, e)
            outcomes.append(ExecutionOutcome(storefront_sku=sf_sku, action="lookup", ok=False,
                                             error_class=cls, error=summarize_body(str(e))))
            continue
        if product is None:
            outcomes.append(ExecutionOutcome(storefront_sku=sf_sku, action="skip", ok=False, error_class="not_found"))
            continue
        decision = decide(
            erp_sku=item.sku,
            storefront_sku=sf_sku,
            net_stock=item.net_stock,
            current_status=product.stock_status,
            current_quantity=product.live_quantity,
            custom_threshold=config.threshold_for(sf_sku, item.sku),
            low_stock_band=low_stock_band,
            allow_to_instock=allow_to_instock,
            allow_to_outofstock=allow_to_outofstock,
        )
        if not decision.is_change:
            outcomes.append(ExecutionOutcome(storefront_sku=sf_sku, action="skip", ok=True))
            continue
        bucket = needs.setdefault(decision.action, [])
        if len(bucket) < DIAGNOSTIC_SKU_LIMIT:
            bucket.append(sf_sku)
        outcome = await apply_decision(client, decision, product, detector)
        # lookups that raced with a deleted product count as not found
        if outcome.not_found:
            outcome = outcome.model_copy(update={"action": "skip"})
        outcomes.append(outcome)
    return aggregate_fanout(item.sku, item.net_stock, outcomes)


def collapse_warehouse_rows(items: List[ErpStockRecord]) -> List[ErpStockRecord]:
    """
    One record per SKU, first-seen order. With warehouses left unmerged the
    warehouse holding the most net stock speaks for the SKU.
    """
    best: Dict[str, ErpStockRecord] = {}
    for item in items:
        current = best.get(item.sku)
        if current is None or item.net_stock > current.net_stock:
            best[item.sku] = item
    return list(best.values())


async def run_site_step(
    *,
    site_name: str,
    records: List[ErpStockRecord],
    mapping: MappingIndex,
    config: FilterConfig,
    client: WooStoreClient,
    detector: ProductDetector,
    allow_to_instock: bool = True,
    allow_to_outofstock: bool = True,
    low_stock_band: int | None = None,
    item_delay: float | None = None,
    fanout_delay: float | None = None,
) -> SiteStepResult:
    band = settings.LOW_STOCK_BAND if low_stock_band is None else low_stock_band
    item_delay = settings.SYNC_ITEM_DELAY if item_delay is None else item_delay
    fanout_delay = settings.FANOUT_DELAY if fanout_delay is None else fanout_delay

    filtered = run_pipeline(records, config, label=site_name)
    items = collapse_warehouse_rows(filtered.items)
    if len(items) < len(filtered.items):
        logger.info("[SITE] %s: %d warehouse rows collapsed to %d SKUs", site_name, len(filtered.items), len(items))
    result = SiteStepResult(total_checked=len(items))
    needs: Dict[str, List[str]] = {}
    not_found: List[str] = []
    handled: Set[str] = set()

    logger.info("[SITE] %s: %d items to check (%d mapped storefront SKUs)", site_name, len(items), len(mapping))
    for idx, item in enumerate(items):
        if idx and item_delay:
            await asyncio.sleep(item_delay)
        res = await _sync_item(
            item, mapping, config, client, detector,
            allow_to_instock=allow_to_instock,
            allow_to_outofstock=allow_to_outofstock,
            low_stock_band=band,
            fanout_delay=fanout_delay,
            needs=needs,
            handled=handled,
        )
        if res.status == "failed":
            result.failed += 1
        elif res.status == "synced":
            if res.action == "to_outofstock":
                result.synced_to_outofstock += 1
            elif res.action == "to_quantity":
                result.synced_quantity += 1
            else:
                result.synced_to_instock += 1
        else:
            result.skipped += 1
            if res.not_found and len(not_found) < DIAGNOSTIC_SKU_LIMIT:
                not_found.append(res.erp_sku)
        if res.status != "skipped":
            result.details.append(res.model_dump())

    result.diagnostics = {
        "filter_counts": {k: list(v) for k, v in filtered.stage_counts.items()},
        "detection": detector.stats(),
        "needs": needs,
        "not_found_samples": not_found,
        "flags": {
            "allow_sync_to_instock": allow_to_instock,
            "allow_sync_to_outofstock": allow_to_outofstock,
            "merge_warehouses": config.merge_warehouses,
            "low_stock_band": band,
        },
    }
    logger.info(
        "[SITE] %s done: checked=%d instock=%d outofstock=%d quantity=%d failed=%d skipped=%d",
        site_name, result.total_checked, result.synced_to_instock, result.synced_to_outofstock,
        result.synced_quantity, result.failed, result.skipped,
    )
    return result
