# stocksync/sync/decider.py
# --------------------------------------------------------------------------------------
# Stock transition rules for one (ERP item, storefront product) pair.
#
#   instock    & net <= threshold                         -> outofstock (status only)
#   instock    & threshold < net <= band & no custom rule -> quantity = min(net, live)
#   outofstock & net > threshold                          -> instock (status only)
#   otherwise                                             -> skip
#
# Directions are gated by allow_to_instock / allow_to_outofstock.
# --------------------------------------------------------------------------------------
from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

from stocksync.config import settings

Action = Literal["to_instock", "to_outofstock", "to_quantity", "skip"]

INSTOCK = "instock"
OUTOFSTOCK = "outofstock"


class SyncDecision(BaseModel):
    erp_sku: str
    storefront_sku: str
    net_stock: int
    threshold: int = 0
    current_status: str
    current_quantity: Optional[int] = None
    action: Action = "skip"
    target_status: Optional[str] = None
    target_quantity: Optional[int] = None
    reason: str = ""

    @property
    def is_change(self) -> bool:
        return self.action != "skip"

    def payload(self) -> Dict[str, Any]:
        """Storefront update body for this decision."""
        if self.action == "to_quantity":
            qty = int(self.target_quantity or 0)
            # quantity <= 0 is always out of stock, whatever was requested
            return {
                "manage_stock": True,
                "stock_quantity": qty,
                "stock_status": INSTOCK if qty > 0 else OUTOFSTOCK,
            }
        if self.action in ("to_instock", "to_outofstock"):
            return {"manage_stock": False, "stock_status": self.target_status}
        return {}


def decide(
    *,
    erp_sku: str,
    storefront_sku: str,
    net_stock: int,
    current_status: str,
    current_quantity: Optional[int] = None,
    custom_threshold: Optional[int] = None,
    low_stock_band: int | None = None,
    allow_to_instock: bool = True,
    allow_to_outofstock: bool = True,
) -> SyncDecision:
    band = settings.LOW_STOCK_BAND if low_stock_band is None else low_stock_band
    threshold = custom_threshold if custom_threshold is not None else 0
    d = SyncDecision(
        erp_sku=erp_sku,
        storefront_sku=storefront_sku,
        net_stock=net_stock,
        threshold=threshold,
        current_status=current_status,
        current_quantity=current_quantity,
    )

    if current_status == INSTOCK and net_stock <= threshold:
        d.action, d.target_status = "to_outofstock", OUTOFSTOCK
        d.reason = f"net {net_stock} <= threshold {threshold}"
    elif (
        current_status == INSTOCK
        and net_stock <= band
        and custom_threshold is None
        and current_quantity is not None
    ):
        target = min(net_stock, current_quantity)
        if target != current_quantity:
            d.action, d.target_quantity = "to_quantity", target
            d.target_status = INSTOCK if target > 0 else OUTOFSTOCK
            d.reason = f"low stock: min(net {net_stock}, live {current_quantity})"
    elif current_status == OUTOFSTOCK and net_stock > threshold:
        d.action, d.target_status = "to_instock", INSTOCK
        d.reason = f"net {net_stock} > threshold {threshold}"

    if d.action != "skip" and not _allowed(d, allow_to_instock, allow_to_outofstock):
        d.reason = f"{d.action} disabled"
        d.action, d.target_status, d.target_quantity = "skip", None, None
    return d


def _allowed(d: SyncDecision, allow_to_instock: bool, allow_to_outofstock: bool) -> bool:
    if d.target_status == OUTOFSTOCK:
        return allow_to_outofstock
    return allow_to_instock
