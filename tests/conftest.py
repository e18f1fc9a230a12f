from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from stocksync.config import settings
from stocksync.db import create_tables
from stocksync.errors import ConfigurationError
from stocksync.mapping.resolver import MappingCache
from stocksync.models.sync import AutoSyncConfig, Site, SiteFilter
from stocksync.notify.notifier import Notifier
from stocksync.sync.orchestrator import BatchOrchestrator
from stocksync.woo.client import StorefrontProduct

FM = settings.ERP_FIELD_MAP


def erp_row(sku, sellable, backorder=0, wid="W1", name="", cat1="", cat2="", cat3=""):
    return {
        FM["sku"]: sku,
        FM["name"]: name or sku,
        FM["sellable_qty"]: sellable,
        FM["backorder_qty"]: backorder,
        FM["warehouse_id"]: wid,
        FM["category1"]: cat1,
        FM["category2"]: cat2,
        FM["category3"]: cat3,
    }


def mapping_row(erp_sku, storefront_sku):
    return {FM["mapping_erp_sku"]: erp_sku, FM["mapping_storefront_sku"]: storefront_sku}


class FakeErp:
    def __init__(self, rows=None, mappings=None, warehouses=None, configured=True, fail_with=None,
                 mapping_fail_with=None):
        self.rows = rows or []
        self.mappings = mappings or []
        self.warehouses = warehouses or {"W1": "Main", "W2": "Overflow"}
        self.configured = configured
        self.fail_with = fail_with
        self.mapping_fail_with = mapping_fail_with
        self.inventory_calls = 0
        self.mapping_calls = 0

    def ensure_configured(self):
        if not self.configured:
            raise ConfigurationError("ERP configuration incomplete: missing ERP_ENGINE_CODE")

    async def fetch_all_inventory(self, page_size=None):
        self.inventory_calls += 1
        if self.fail_with:
            raise self.fail_with
        return list(self.rows)

    async def fetch_warehouse_names(self, ids):
        return {i: self.warehouses.get(i, i) for i in ids}

    async def fetch_sku_mappings(self, limit=None):
        self.mapping_calls += 1
        if self.mapping_fail_with:
            raise self.mapping_fail_with
        return list(self.mappings)


class FakeStoreClient:
    """In-memory storefront: products keyed by upper-case SKU."""

    def __init__(self, products: List[StorefrontProduct] = (), fail: Optional[Dict[str, Exception]] = None):
        self.products = {p.sku.upper(): p for p in products}
        self.fail = {k.upper(): v for k, v in (fail or {}).items()}
        self.updates: List[Tuple[int, Dict[str, Any], Optional[int]]] = []
        self.lookups: List[str] = []

    async def find_product_by_sku(self, sku):
        self.lookups.append(sku)
        return self.products.get(sku.upper())

    async def update_stock(self, product_id, payload, parent_id=None):
        product = next(p for p in self.products.values() if p.id == product_id)
        if product.sku.upper() in self.fail:
            raise self.fail[product.sku.upper()]
        self.updates.append((product_id, dict(payload), parent_id))
        updated = product.model_copy(update={
            "stock_status": payload.get("stock_status", product.stock_status),
            "manage_stock": payload.get("manage_stock", product.manage_stock),
            "stock_quantity": payload.get("stock_quantity", product.stock_quantity if payload.get("manage_stock") else None),
        })
        self.products[product.sku.upper()] = updated
        return updated


class FakeDetector:
    """ProductDetector without a database."""

    def __init__(self, client):
        self.client = client
        self.not_found = 0
        self.remembered = []

    async def detect(self, sku):
        p = await self.client.find_product_by_sku(sku)
        if p is None:
            self.not_found += 1
        return p

    async def remember(self, product):
        self.remembered.append(product)

    def stats(self):
        return {"cache_hits": 0, "live_lookups": len(self.client.lookups), "not_found": self.not_found}


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__(webhook_url="http://notify.invalid/hook")
        self.sent = []

    async def send(self, title, body, success, webhook_url=None):
        self.sent.append({"title": title, "body": body, "success": success})
        return True


def product(pid, sku, status="instock", qty=None, manage=False, parent_id=None):
    return StorefrontProduct(
        id=pid,
        sku=sku,
        name=sku,
        stock_status=status,
        stock_quantity=qty,
        manage_stock=manage,
        parent_id=parent_id,
        type="variation" if parent_id else "simple",
    )


async def open_db(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stocksync.db'}", poolclass=NullPool)
    await create_tables(engine)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def seed(sm, sites=(("s1", "Site One"),), filters=None, site_filters=None, **config):
    async with sm() as session:
        for sid, name in sites:
            session.add(Site(id=sid, name=name, url=f"https://{sid}.example", api_key="ck", api_secret="cs"))
        session.add(AutoSyncConfig(name="default", enabled=config.pop("enabled", True),
                                   filters=filters or {}, **config))
        for sid, row in (site_filters or {}).items():
            session.add(SiteFilter(site_id=sid, **row))
        await session.commit()


def make_orchestrator(sm, erp, clients, notifier=None, **kw):
    return BatchOrchestrator(
        sessionmaker=sm,
        erp_client=erp,
        client_factory=lambda site: clients[site.id],
        notifier=notifier or RecordingNotifier(),
        mapping_cache=MappingCache(300),
        item_delay=0,
        fanout_delay=0,
        **kw,
    )
