from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional


def _to_int(v) -> int:
    """Blank means 0; anything else that is not a finite number is a data error."""
    if v is None or (isinstance(v, str) and not v.strip()):
        return 0
    try:
        return int(float(str(v).strip()))
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"not a quantity: {v!r}")


class ErpStockRecord(BaseModel):
    """One ERP inventory row, keyed by (sku, warehouse_id) until merged."""
    model_config = ConfigDict(frozen=True)

    sku: str
    name: str = ""
    sellable_qty: int = 0
    backorder_qty: int = 0
    warehouse_id: str = ""
    warehouse: str = ""
    category1: str = ""
    category2: str = ""
    category3: str = ""

    @field_validator("sellable_qty", "backorder_qty", mode="before")
    @classmethod
    def _coerce_qty(cls, v):
        return _to_int(v)

    @field_validator("sku", mode="before")
    @classmethod
    def _strip_sku(cls, v):
        return str(v or "").strip()

    @property
    def net_stock(self) -> int:
        # may be negative
        return self.sellable_qty - self.backorder_qty


class SkuMappingRow(BaseModel):
    erp_sku: str
    storefront_sku: str
    quantity: Optional[int] = 1
