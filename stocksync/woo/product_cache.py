#===========================================================================
# stocksync/woo/product_cache.py
# Site-scoped local snapshot of storefront products (wc_product_cache).
# Lookups read the cache first and fall back to the live API on a miss.
#===========================================================================
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksync.config import settings
from stocksync.db import utcnow
from stocksync.models.sync import ProductCacheEntry
from stocksync.woo.client import StorefrontProduct, WooStoreClient

logger = logging.getLogger("stocksync.woo")


def _entry_to_product(entry: ProductCacheEntry) -> StorefrontProduct:
    return StorefrontProduct(
        id=entry.product_id,
        parent_id=entry.parent_id,
        type=entry.product_type,
        sku=entry.sku,
        name=entry.name,
        stock_status=entry.stock_status,
        stock_quantity=entry.stock_quantity,
        manage_stock=entry.manage_stock,
    )


async def upsert_product(session: AsyncSession, site_id: str, product: StorefrontProduct) -> None:
    key = product.sku.strip().upper()
    if not key:
        return
    entry = (await session.execute(
        select(ProductCacheEntry).where(ProductCacheEntry.site_id == site_id, ProductCacheEntry.sku == key)
    )).scalar_one_or_none()
    if entry is None:
        entry = ProductCacheEntry(site_id=site_id, sku=key, product_id=product.id)
        session.add(entry)
    entry.product_id = product.id
    entry.parent_id = product.parent_id
    entry.product_type = product.type
    entry.name = product.name
    entry.stock_status = product.stock_status
    entry.stock_quantity = product.stock_quantity
    entry.manage_stock = product.manage_stock
    entry.refreshed_at = utcnow()


class ProductDetector:
    """
    Resolves storefront SKUs to products for one site, counting where each
    answer came from. Each cache read/write uses its own short session.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        site_id: str,
        client: WooStoreClient,
        ttl_minutes: int | None = None,
    ):
        self.sessionmaker = sessionmaker
        self.site_id = site_id
        self.client = client
        self.ttl = timedelta(minutes=settings.PRODUCT_CACHE_TTL_MINUTES if ttl_minutes is None else ttl_minutes)
        self.cache_hits = 0
        self.live_lookups = 0
        self.not_found = 0

    async def _cached(self, sku: str) -> Optional[StorefrontProduct]:
        async with self.sessionmaker() as session:
            entry = (await session.execute(
                select(ProductCacheEntry).where(
                    ProductCacheEntry.site_id == self.site_id,
                    ProductCacheEntry.sku == sku.strip().upper(),
                )
            )).scalar_one_or_none()
        if entry is None or utcnow() - entry.refreshed_at > self.ttl:
            return None
        return _entry_to_product(entry)

    async def detect(self, sku: str) -> Optional[StorefrontProduct]:
        cached = await self._cached(sku)
        if cached is not None:
            self.cache_hits += 1
            return cached
        self.live_lookups += 1
        product = await self.client.find_product_by_sku(sku)
        if product is None:
            self.not_found += 1
            return None
        await self.remember(product)
        return product

    async def remember(self, product: StorefrontProduct) -> None:
        async with self.sessionmaker() as session:
            await upsert_product(session, self.site_id, product)
            await session.commit()

    def stats(self) -> Dict[str, int]:
        return {"cache_hits": self.cache_hits, "live_lookups": self.live_lookups, "not_found": self.not_found}


async def refresh_site_cache(
    sessionmaker: async_sessionmaker[AsyncSession],
    site_id: str,
    client: WooStoreClient,
) -> Dict[str, int]:
    """Full catalogue refresh for one site, variations of variable products included."""
    products = await client.list_products()
    collected: List[StorefrontProduct] = []
    variable = 0
    for p in products:
        if p.type == "variable":
            variable += 1
            collected.extend(await client.list_variations(p.id))
        if p.sku:
            collected.append(p)
    written = 0
    async with sessionmaker() as session:
        for p in collected:
            if not p.sku:
                continue
            await upsert_product(session, site_id, p)
            written += 1
        await session.commit()
    logger.info("[WC] site %s cache refreshed: products=%d variable=%d cached=%d", site_id, len(products), variable, written)
    return {"products": len(products), "variable": variable, "cached": written}
