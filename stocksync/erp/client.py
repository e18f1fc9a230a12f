#===========================================================================
# stocksync/erp/client.py
# ERP OpenAPI interface module.
# Paged inventory fetch, warehouse name lookup and SKU mapping rows.
# Every call goes through one POST "invoke" endpoint authenticated with
# EngineCode / EngineSecret headers.
#===========================================================================

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from stocksync.config import settings
from stocksync.errors import ConfigurationError, ErpApiError
from stocksync.logging_filters import summarize_body

logger = logging.getLogger("stocksync.erp")


class ErpClient:
    def __init__(
        self,
        *,
        api_url: str | None = None,
        engine_code: str | None = None,
        engine_secret: str | None = None,
        inventory_schema: str | None = None,
        warehouse_schema: str | None = None,
        mapping_schema: str | None = None,
        timeout: float | None = None,
        page_delay: float | None = None,
        max_pages: int | None = None,
    ):
        self.api_url = api_url or settings.ERP_API_URL
        self.engine_code = engine_code if engine_code is not None else settings.ERP_ENGINE_CODE
        self.engine_secret = engine_secret if engine_secret is not None else settings.ERP_ENGINE_SECRET
        self.inventory_schema = inventory_schema if inventory_schema is not None else settings.ERP_INVENTORY_SCHEMA
        self.warehouse_schema = warehouse_schema if warehouse_schema is not None else settings.ERP_WAREHOUSE_SCHEMA
        self.mapping_schema = mapping_schema if mapping_schema is not None else settings.ERP_MAPPING_SCHEMA
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self.page_delay = settings.ERP_PAGE_DELAY if page_delay is None else page_delay
        self.max_pages = max_pages or settings.ERP_MAX_PAGES

    # --- Helpers -----------------------------------------------------------

    def ensure_configured(self) -> None:
        missing = [
            name for name, val in (
                ("ERP_ENGINE_CODE", self.engine_code),
                ("ERP_ENGINE_SECRET", self.engine_secret),
                ("ERP_INVENTORY_SCHEMA", self.inventory_schema),
            ) if not val
        ]
        if missing:
            raise ConfigurationError(f"ERP configuration incomplete: missing {', '.join(missing)}")

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "EngineCode": self.engine_code,
            "EngineSecret": self.engine_secret,
        }

    async def _invoke(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, verify=settings.HTTP_VERIFY_SSL) as client:
            resp = await client.post(self.api_url, headers=self._headers(), json=payload)
        if resp.status_code != 200:
            raise ErpApiError(
                f"ERP {payload.get('ActionName')} failed: HTTP {resp.status_code} {summarize_body(resp.text)}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ErpApiError(f"ERP returned unparsable body: {summarize_body(resp.text)}", status_code=resp.status_code) from e
        if not data.get("Successful"):
            # Logical failure reported inside a 200 response
            raise ErpApiError(f"ERP error: {data.get('ErrorMessage') or 'unknown error'}", status_code=400)
        return data

    async def load_biz_objects(self, schema_code: str, from_row: int, to_row: int) -> List[Dict[str, Any]]:
        query = {
            "FromRowNum": from_row,
            "ToRowNum": to_row,
            "RequireCount": False,
            "ReturnItems": [],
            "SortByCollection": [],
            "Matcher": {"Type": "And", "Matchers": []},
        }
        data = await self._invoke({
            "ActionName": "LoadBizObjects",
            "SchemaCode": schema_code,
            "Filter": json.dumps(query),
        })
        return ((data.get("ReturnData") or {}).get("BizObjectArray")) or []

    async def load_biz_object(self, schema_code: str, object_id: str) -> Dict[str, Any]:
        data = await self._invoke({
            "ActionName": "LoadBizObject",
            "SchemaCode": schema_code,
            "BizObjectId": object_id,
        })
        return ((data.get("ReturnData") or {}).get("BizObject")) or {}

    async def _fetch_paged(self, schema_code: str, page_size: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        from_row = 0
        for page in range(1, self.max_pages + 1):
            batch = await self.load_biz_objects(schema_code, from_row, from_row + page_size)
            logger.debug("[ERP] %s page %d: %d rows", schema_code, page, len(batch))
            if not batch:
                break
            rows.extend(batch)
            if len(batch) < page_size or (limit is not None and len(rows) >= limit):
                break
            from_row += page_size
            if self.page_delay:
                await asyncio.sleep(self.page_delay)
        else:
            logger.warning("[ERP] %s: stopped after max_pages=%d (%d rows)", schema_code, self.max_pages, len(rows))
        return rows[:limit] if limit is not None else rows

    # --- Public contract ---------------------------------------------------

    async def fetch_all_inventory(self, page_size: int | None = None) -> List[Dict[str, Any]]:
        """Fetch all raw inventory rows (paginated, bounded by max_pages)."""
        self.ensure_configured()
        page_size = page_size or settings.ERP_PAGE_SIZE
        rows = await self._fetch_paged(self.inventory_schema, page_size)
        logger.info("[ERP] fetched %d inventory rows", len(rows))
        return rows

    async def fetch_warehouse_names(self, warehouse_ids: List[str]) -> Dict[str, str]:
        """
        {warehouse_id: name}. Lookups that fail fall back to a shortened id
        instead of aborting the fetch.
        """
        names: Dict[str, str] = {}
        if not warehouse_ids or not self.warehouse_schema:
            return names
        for idx, wid in enumerate(warehouse_ids):
            try:
                obj = await self.load_biz_object(self.warehouse_schema, wid)
                names[wid] = obj.get("Name") or wid
            except (ErpApiError, httpx.HTTPError) as e:
                logger.warning("[ERP] warehouse %s name lookup failed: %s", wid[:8], e)
                names[wid] = f"warehouse_{wid[:8]}"
            if self.page_delay and idx < len(warehouse_ids) - 1:
                await asyncio.sleep(self.page_delay)
        return names

    async def fetch_sku_mappings(self, limit: int | None = None) -> List[Dict[str, Any]]:
        """Raw mapping rows; an unconfigured mapping form means the system runs unmapped."""
        if not self.mapping_schema:
            return []
        limit = limit or settings.ERP_MAPPING_LIMIT
        rows = await self._fetch_paged(self.mapping_schema, min(limit, settings.ERP_PAGE_SIZE), limit=limit)
        logger.info("[ERP] fetched %d sku mapping rows", len(rows))
        return rows
