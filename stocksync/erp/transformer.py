# stocksync/erp/transformer.py
# --------------------------------------------------------------------------------------
# Raw ERP form rows -> ErpStockRecord / SkuMappingRow, driven by settings.ERP_FIELD_MAP.
# --------------------------------------------------------------------------------------
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List

from pydantic import ValidationError

from stocksync.config import settings
from stocksync.erp.models import ErpStockRecord, SkuMappingRow

logger = logging.getLogger("stocksync.erp")


def _field(row: Dict[str, Any], field_map: Dict[str, str], key: str) -> Any:
    code = field_map.get(key)
    return row.get(code) if code else None


def _text(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def warehouse_label(warehouse_id: str, names: Dict[str, str]) -> str:
    if warehouse_id in names:
        return names[warehouse_id]
    if warehouse_id and len(warehouse_id) > 8:
        return f"warehouse_{warehouse_id[:8]}"
    return warehouse_id or "unknown"


def extract_warehouse_ids(rows: Iterable[Dict[str, Any]], field_map: Dict[str, str] | None = None) -> List[str]:
    field_map = field_map or settings.ERP_FIELD_MAP
    seen: Dict[str, None] = {}
    for row in rows:
        wid = _text(_field(row, field_map, "warehouse_id"))
        if wid:
            seen.setdefault(wid, None)
    return list(seen)


def to_stock_records(
    rows: Iterable[Dict[str, Any]],
    warehouse_names: Dict[str, str] | None = None,
    field_map: Dict[str, str] | None = None,
) -> List[ErpStockRecord]:
    """Rows without a SKU or with an unparsable quantity are data errors: logged and dropped."""
    field_map = field_map or settings.ERP_FIELD_MAP
    warehouse_names = warehouse_names or {}
    out: List[ErpStockRecord] = []
    dropped = invalid = 0
    for row in rows:
        sku = _text(_field(row, field_map, "sku"))
        if not sku:
            dropped += 1
            continue
        wid = _text(_field(row, field_map, "warehouse_id"))
        try:
            record = ErpStockRecord(
                sku=sku,
                name=_text(_field(row, field_map, "name")),
                sellable_qty=_field(row, field_map, "sellable_qty"),
                backorder_qty=_field(row, field_map, "backorder_qty"),
                warehouse_id=wid,
                warehouse=warehouse_label(wid, warehouse_names),
                category1=_text(_field(row, field_map, "category1")),
                category2=_text(_field(row, field_map, "category2")),
                category3=_text(_field(row, field_map, "category3")),
            )
        except ValidationError as e:
            invalid += 1
            logger.warning("[ERP] skipped %s@%s: %s", sku, wid or "-", e.errors()[0].get("msg"))
            continue
        out.append(record)
    if dropped:
        logger.warning("[ERP] skipped %d inventory rows without SKU", dropped)
    if invalid:
        logger.warning("[ERP] skipped %d inventory rows with unparsable quantities", invalid)
    return out


def to_mapping_rows(rows: Iterable[Dict[str, Any]], field_map: Dict[str, str] | None = None) -> List[SkuMappingRow]:
    field_map = field_map or settings.ERP_FIELD_MAP
    out: List[SkuMappingRow] = []
    for row in rows:
        storefront_sku = _text(_field(row, field_map, "mapping_storefront_sku"))
        erp_sku = _text(_field(row, field_map, "mapping_erp_sku"))
        if storefront_sku and erp_sku:
            out.append(SkuMappingRow(erp_sku=erp_sku, storefront_sku=storefront_sku))
    return out
