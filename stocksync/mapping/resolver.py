#===========================================================================
# stocksync/mapping/resolver.py
# Bidirectional ERP SKU <-> storefront SKU index.
#===========================================================================
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from stocksync.erp.models import SkuMappingRow

logger = logging.getLogger("stocksync.mapping")


def _norm(sku: str) -> str:
    return (sku or "").strip().upper()


class MappingIndex:
    """
    erp_sku -> [storefront_sku, ...] (one-to-many, insertion order kept)
    STOREFRONT_SKU -> erp_sku       (upper-cased key, first mapping wins)
    """

    def __init__(self) -> None:
        self._erp_to_storefront: Dict[str, List[str]] = {}
        self._storefront_to_erp: Dict[str, str] = {}

    @classmethod
    def from_rows(cls, rows: Iterable[SkuMappingRow | Dict[str, Any]]) -> "MappingIndex":
        index = cls()
        valid = skipped = conflicts = 0
        for row in rows:
            if isinstance(row, dict):
                erp_sku = (row.get("erp_sku") or "").strip()
                sf_sku = (row.get("storefront_sku") or "").strip()
            else:
                erp_sku, sf_sku = row.erp_sku.strip(), row.storefront_sku.strip()
            if not erp_sku or not sf_sku:
                skipped += 1
                continue
            key = _norm(sf_sku)
            owner = index._storefront_to_erp.get(key)
            if owner is not None and owner != erp_sku:
                # A storefront SKU accounts to exactly one ERP SKU
                conflicts += 1
                logger.warning("[MAPPING] %s already mapped to %s; ignoring mapping to %s", sf_sku, owner, erp_sku)
                continue
            targets = index._erp_to_storefront.setdefault(erp_sku, [])
            if key not in {_norm(t) for t in targets}:
                targets.append(sf_sku)
            index._storefront_to_erp[key] = erp_sku
            valid += 1
        logger.info(
            "[MAPPING] index built: valid=%d skipped=%d conflicts=%d erp_skus=%d storefront_skus=%d",
            valid, skipped, conflicts, len(index._erp_to_storefront), len(index._storefront_to_erp),
        )
        return index

    def __len__(self) -> int:
        return len(self._storefront_to_erp)

    @property
    def is_empty(self) -> bool:
        return not self._erp_to_storefront

    def get_storefront_skus(self, erp_sku: str) -> List[str]:
        """[] when unmapped; callers fall back to the ERP SKU itself."""
        return list(self._erp_to_storefront.get((erp_sku or "").strip(), []))

    def resolve(self, erp_sku: str) -> List[str]:
        return self.get_storefront_skus(erp_sku) or [erp_sku]

    def to_rows(self) -> List[Dict[str, str]]:
        return [
            {"erp_sku": erp_sku, "storefront_sku": sf_sku}
            for erp_sku, targets in self._erp_to_storefront.items()
            for sf_sku in targets
        ]


class MappingCache:
    """
    Holds one MappingIndex with the time it was loaded. Population is explicit:
    either populate() with rows already at hand, or get_or_load() with a loader.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self.value: Optional[MappingIndex] = None
        self.loaded_at: Optional[float] = None

    def is_fresh(self) -> bool:
        if self.value is None or self.loaded_at is None:
            return False
        return (self._clock() - self.loaded_at) < self.ttl

    def populate(self, rows: Iterable[SkuMappingRow | Dict[str, Any]]) -> MappingIndex:
        self.value = MappingIndex.from_rows(rows)
        self.loaded_at = self._clock()
        return self.value

    def invalidate(self) -> None:
        self.value = None
        self.loaded_at = None

    def get(self) -> Optional[MappingIndex]:
        return self.value if self.is_fresh() else None

    async def get_or_load(self, loader: Callable[[], Awaitable[Iterable[SkuMappingRow | Dict[str, Any]]]]) -> MappingIndex:
        cached = self.get()
        if cached is not None:
            return cached
        rows = await loader()
        return self.populate(rows)
