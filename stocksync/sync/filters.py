# stocksync/sync/filters.py
# =======================================================
# ERP row filter pipeline
# Fixed stage order:
#   1. warehouse exclusion        (warehouse level)
#   2. SKU warehouse rules        (warehouse level)
#   3. warehouse merge            (sums across remaining warehouses)
#   4. SKU prefix exclusion
#   5. SKU / name whitelist
#   6. category filter (levels 1-3)
# Merge must run after the warehouse-level stages and before the SKU stages.
# =======================================================
from __future__ import annotations

import logging
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field, field_validator

from stocksync.erp.models import ErpStockRecord

logger = logging.getLogger("stocksync.filters")

MERGED_WAREHOUSE = "merged"
_SPLIT_RE = re.compile(r"[,，\n]")

T = TypeVar("T")


def split_list(value: Any) -> List[str]:
    """Accepts list | comma/newline separated string | None."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        parts = [str(v) for v in value]
    else:
        parts = _SPLIT_RE.split(str(value))
    return [p.strip() for p in parts if p and p.strip()]


def match_sku_pattern(sku: str, pattern: str) -> bool:
    """Exact match or wildcard suffix ("PREFIX*"), case-insensitive."""
    sku_u = (sku or "").strip().upper()
    pat = (pattern or "").strip().upper()
    if not pat:
        return False
    if pat.endswith("*"):
        return sku_u.startswith(pat[:-1])
    return sku_u == pat


def find_pattern_value(sku: str, patterns: Dict[str, T]) -> Optional[T]:
    """Exact patterns win over wildcards; among wildcards the longest prefix wins."""
    if not patterns:
        return None
    best: Optional[Tuple[int, T]] = None
    for pattern, value in patterns.items():
        if not match_sku_pattern(sku, pattern):
            continue
        if not pattern.strip().endswith("*"):
            return value
        weight = len(pattern.strip())
        if best is None or weight > best[0]:
            best = (weight, value)
    return best[1] if best else None


class FilterConfig(BaseModel):
    merge_warehouses: bool = False
    sku_whitelist: List[str] = Field(default_factory=list)
    exclude_sku_prefixes: List[str] = Field(default_factory=list)
    category_filters: List[str] = Field(default_factory=list)
    exclude_warehouses: List[str] = Field(default_factory=list)
    sku_warehouse_rules: Dict[str, List[str]] = Field(default_factory=dict)
    instock_threshold: Dict[str, int] = Field(default_factory=dict)

    @field_validator("sku_whitelist", "exclude_sku_prefixes", "category_filters", "exclude_warehouses", mode="before")
    @classmethod
    def _split(cls, v):
        return split_list(v)

    @field_validator("sku_warehouse_rules", mode="before")
    @classmethod
    def _split_rules(cls, v):
        return {str(k).strip(): split_list(w) for k, w in (v or {}).items() if str(k).strip()}

    @field_validator("instock_threshold", mode="before")
    @classmethod
    def _thresholds(cls, v):
        out = {}
        for k, n in (v or {}).items():
            try:
                out[str(k).strip()] = int(n)
            except (TypeError, ValueError):
                logger.warning("[FILTER] ignoring non-numeric threshold %r for %r", n, k)
        return out

    def threshold_for(self, *skus: str) -> Optional[int]:
        """Custom in-stock threshold for the first of `skus` that matches a pattern."""
        for sku in skus:
            value = find_pattern_value(sku, self.instock_threshold)
            if value is not None:
                return value
        return None


def merge_filter_configs(global_cfg: FilterConfig, site_cfg: Optional[FilterConfig]) -> FilterConfig:
    """Site values win when non-empty; merge_warehouses is global only."""
    if site_cfg is None:
        return global_cfg.model_copy(deep=True)
    merged: Dict[str, Any] = {"merge_warehouses": global_cfg.merge_warehouses}
    for name in ("sku_whitelist", "exclude_sku_prefixes", "category_filters",
                 "exclude_warehouses", "sku_warehouse_rules", "instock_threshold"):
        site_val = getattr(site_cfg, name)
        merged[name] = site_val if site_val else getattr(global_cfg, name)
    return FilterConfig.model_validate(merged)


# ---- Stages ----

def exclude_by_warehouse(items: List[ErpStockRecord], excluded: List[str]) -> List[ErpStockRecord]:
    if not excluded:
        return items
    needles = [w.lower() for w in excluded]
    return [i for i in items if not any(n in (i.warehouse or "").strip().lower() for n in needles)]


def apply_sku_warehouse_rules(items: List[ErpStockRecord], rules: Dict[str, List[str]]) -> List[ErpStockRecord]:
    if not rules:
        return items
    kept = []
    for item in items:
        allowed = find_pattern_value(item.sku, rules)
        if allowed is None:
            kept.append(item)
            continue
        wh = (item.warehouse or "").lower()
        if any(a.lower() in wh for a in allowed):
            kept.append(item)
    return kept


def merge_warehouses(items: List[ErpStockRecord]) -> List[ErpStockRecord]:
    grouped: "OrderedDict[str, List[ErpStockRecord]]" = OrderedDict()
    for item in items:
        grouped.setdefault(item.sku, []).append(item)
    merged = []
    for rows in grouped.values():
        first = rows[0]
        merged.append(first.model_copy(update={
            "sellable_qty": sum(r.sellable_qty for r in rows),
            "backorder_qty": sum(r.backorder_qty for r in rows),
            "warehouse": MERGED_WAREHOUSE,
            "warehouse_id": "",
        }))
    return merged


def exclude_by_sku_prefix(items: List[ErpStockRecord], prefixes: List[str]) -> List[ErpStockRecord]:
    if not prefixes:
        return items
    lowered = [p.lower() for p in prefixes]
    return [i for i in items if not any(i.sku.lower().startswith(p) for p in lowered)]


def filter_by_whitelist(items: List[ErpStockRecord], whitelist: List[str]) -> List[ErpStockRecord]:
    if not whitelist:
        return items
    needles = [w.lower() for w in whitelist]
    return [
        i for i in items
        if any(n in i.sku.lower() or n in (i.name or "").lower() for n in needles)
    ]


def filter_by_category(items: List[ErpStockRecord], categories: List[str]) -> List[ErpStockRecord]:
    if not categories:
        return items
    needles = [c.lower() for c in categories]
    return [
        i for i in items
        if any(
            n in (i.category1 or "").lower() or n in (i.category2 or "").lower() or n in (i.category3 or "").lower()
            for n in needles
        )
    ]


class FilterResult(BaseModel):
    items: List[ErpStockRecord]
    stage_counts: Dict[str, Tuple[int, int]] = Field(default_factory=dict)


def run_pipeline(items: List[ErpStockRecord], config: FilterConfig, label: str = "") -> FilterResult:
    """Apply every stage in order; stages with empty config pass items through."""
    stages = (
        ("exclude_warehouses", lambda xs: exclude_by_warehouse(xs, config.exclude_warehouses)),
        ("sku_warehouse_rules", lambda xs: apply_sku_warehouse_rules(xs, config.sku_warehouse_rules)),
        ("merge_warehouses", lambda xs: merge_warehouses(xs) if config.merge_warehouses else xs),
        ("exclude_sku_prefixes", lambda xs: exclude_by_sku_prefix(xs, config.exclude_sku_prefixes)),
        ("sku_whitelist", lambda xs: filter_by_whitelist(xs, config.sku_whitelist)),
        ("category_filters", lambda xs: filter_by_category(xs, config.category_filters)),
    )
    counts: Dict[str, Tuple[int, int]] = {}
    current = list(items)
    for name, stage in stages:
        before = len(current)
        current = stage(current)
        counts[name] = (before, len(current))
        if before != len(current):
            logger.info("[FILTER]%s %s: %d -> %d", f" {label}" if label else "", name, before, len(current))
    logger.info("[FILTER]%s input %d -> output %d", f" {label}" if label else "", len(items), len(current))
    return FilterResult(items=current, stage_counts=counts)
