#==========================================================================================
# stocksync/woo/client.py
# WooCommerce REST API interface, one instance per storefront site.
# Product lookup by SKU, stock updates (simple vs. variation addressing) and
# bounded catalogue listing for the local product cache.
#==========================================================================================
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from stocksync.config import settings
from stocksync.errors import StorefrontApiError
from stocksync.logging_filters import summarize_body

logger = logging.getLogger("stocksync.woo")

PER_PAGE = 100


class StorefrontProduct(BaseModel):
    id: int
    parent_id: Optional[int] = None
    type: str = "simple"
    sku: str = ""
    name: str = ""
    stock_status: str = ""
    stock_quantity: Optional[int] = None
    manage_stock: bool = False

    @property
    def is_variation(self) -> bool:
        return self.type == "variation" or bool(self.parent_id)

    @property
    def live_quantity(self) -> Optional[int]:
        """
        Quantity only means something while WooCommerce manages stock on this
        product. Variations whose stock is held by the parent ("parent") report
        None: a quantity push would detach them from the shared parent stock,
        so only the status rules apply to them.
        """
        return self.stock_quantity if self.manage_stock else None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "StorefrontProduct":
        qty = data.get("stock_quantity")
        # variations report manage_stock "parent" when inheriting; kept as False
        manage = data.get("manage_stock")
        return cls(
            id=int(data["id"]),
            parent_id=int(data.get("parent_id") or 0) or None,
            type=data.get("type") or "simple",
            sku=(data.get("sku") or "").strip(),
            name=data.get("name") or "",
            stock_status=data.get("stock_status") or "",
            stock_quantity=int(qty) if qty is not None else None,
            manage_stock=manage is True,
        )


class WooStoreClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        *,
        timeout: float | None = None,
        max_pages: int | None = None,
        name: str = "",
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.auth = (api_key, api_secret)
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self.max_pages = max_pages or settings.WC_MAX_PAGES
        self.name = name or self.base_url

    def _url(self, path: str) -> str:
        return f"{self.base_url}/wp-json/wc/v3{path}"

    async def _request(self, method: str, path: str, *, params: Dict[str, Any] | None = None,
                       json: Dict[str, Any] | None = None) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout, verify=settings.HTTP_VERIFY_SSL) as client:
            resp = await client.request(method, self._url(path), auth=self.auth, params=params, json=json)
        if resp.status_code >= 400:
            raise StorefrontApiError(
                f"{method} {path} -> HTTP {resp.status_code}: {summarize_body(resp.text)}",
                status_code=resp.status_code,
            )
        try:
            return resp.json() if resp.content else None
        except ValueError as e:
            raise StorefrontApiError(
                f"{method} {path} returned unparsable body: {summarize_body(resp.text)}",
                status_code=resp.status_code,
            ) from e

    # ---- Products ----

    async def find_product_by_sku(self, sku: str) -> Optional[StorefrontProduct]:
        """Exact (case-insensitive) SKU match; variations are returned by the same query."""
        data = await self._request("GET", "/products", params={"sku": sku, "per_page": 10})
        wanted = (sku or "").strip().upper()
        for row in data or []:
            if (row.get("sku") or "").strip().upper() == wanted:
                return StorefrontProduct.from_api(row)
        return None

    async def update_stock(
        self,
        product_id: int,
        payload: Dict[str, Any],
        parent_id: Optional[int] = None,
    ) -> StorefrontProduct:
        """PUT the stock fields; variations are addressed under their parent."""
        if parent_id:
            path = f"/products/{parent_id}/variations/{product_id}"
        else:
            path = f"/products/{product_id}"
        data = await self._request("PUT", path, json=payload)
        if not isinstance(data, dict) or "id" not in data:
            raise StorefrontApiError(f"PUT {path} returned no product", status_code=None)
        if parent_id and not data.get("parent_id"):
            data = {**data, "parent_id": parent_id, "type": data.get("type") or "variation"}
        return StorefrontProduct.from_api(data)

    async def _list_paged(self, path: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            batch = await self._request("GET", path, params={"per_page": PER_PAGE, "page": page})
            if not batch:
                break
            rows.extend(batch)
            if len(batch) < PER_PAGE:
                break
        else:
            logger.warning("[WC] %s %s: stopped after max_pages=%d (%d rows)", self.name, path, self.max_pages, len(rows))
        return rows

    async def list_products(self) -> List[StorefrontProduct]:
        return [StorefrontProduct.from_api(r) for r in await self._list_paged("/products")]

    async def list_variations(self, parent_id: int) -> List[StorefrontProduct]:
        rows = await self._list_paged(f"/products/{parent_id}/variations")
        out = []
        for r in rows:
            r = {**r, "parent_id": r.get("parent_id") or parent_id, "type": "variation"}
            out.append(StorefrontProduct.from_api(r))
        return out
