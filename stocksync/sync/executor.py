# stocksync/sync/executor.py
# Applies one SyncDecision to one storefront product. Single attempt; every error
# is caught here and returned as an outcome for the site step to account.
from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel

from stocksync.errors import ErrorClass, classify_error
from stocksync.logging_filters import summarize_body
from stocksync.sync.decider import SyncDecision
from stocksync.woo.client import StorefrontProduct, WooStoreClient
from stocksync.woo.product_cache import ProductDetector

logger = logging.getLogger("stocksync.executor")


class ExecutionOutcome(BaseModel):
    storefront_sku: str
    action: str
    ok: bool
    error_class: Optional[ErrorClass] = None
    error: Optional[str] = None

    @property
    def not_found(self) -> bool:
        return self.error_class == "not_found"


async def apply_decision(
    client: WooStoreClient,
    decision: SyncDecision,
    product: StorefrontProduct,
    detector: ProductDetector | None = None,
) -> ExecutionOutcome:
    payload = decision.payload()
    try:
        updated = await client.update_stock(
            product.id,
            payload,
            parent_id=product.parent_id if product.is_variation else None,
        )
    except Exception as e:
        cls = classify_error(e)
        logger.warning("[SYNC] %s %s failed (%s): %s", decision.storefront_sku, decision.action, cls, e)
        return ExecutionOutcome(
            storefront_sku=decision.storefront_sku,
            action=decision.action,
            ok=False,
            error_class=cls,
            error=summarize_body(str(e)),
        )

    logger.info(
        "[SYNC] %s %s -> %s%s",
        decision.storefront_sku, decision.current_status, payload.get("stock_status"),
        f" qty={payload['stock_quantity']}" if "stock_quantity" in payload else "",
    )
    if detector is not None:
        try:
            if not updated.sku:
                updated = updated.model_copy(update={"sku": product.sku})
            await detector.remember(updated)
        except Exception as e:
            # the next full cache refresh corrects it
            logger.warning("[SYNC] cache refresh for %s failed: %s", decision.storefront_sku, e)
    return ExecutionOutcome(storefront_sku=decision.storefront_sku, action=decision.action, ok=True)
