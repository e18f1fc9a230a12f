# ----------------------------------------------------------------
# Import configuration variables to be used throughout the project
# ----------------------------------------------------------------
import os
import json as _json
from dotenv import load_dotenv

# Load .env (allow container env to override file values)
load_dotenv(override=True)


def _rstrip_slash(s: str) -> str:
    return (s or "").rstrip("/")


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


def _get_json_map(name: str, default: dict | None = None) -> dict:
    raw = os.getenv(name, "")
    if not raw:
        return default or {}
    try:
        return _json.loads(raw)
    except Exception:
        return default or {}


# Raw ERP form field codes -> logical stock fields
DEFAULT_ERP_FIELD_MAP = {
    "sku": "F0000001",
    "name": "Name",
    "sellable_qty": "F0000030",
    "backorder_qty": "F0000083",
    "warehouse_id": "F0000007",
    "category1": "F0000003",
    "category2": "F0000002",
    "category3": "F0000004",
    # SKU mapping form
    "mapping_storefront_sku": "F0000001",
    "mapping_erp_sku": "F0000002",
}


class Settings:
    # ── Database ─────────────────────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/stocksync.db")

    # ── ERP (low-code OpenAPI) ───────────────────────────────────────────────
    ERP_API_URL: str = _rstrip_slash(os.getenv("ERP_API_URL", "https://www.h3yun.com/OpenApi/Invoke"))
    ERP_ENGINE_CODE: str = os.getenv("ERP_ENGINE_CODE", "")
    ERP_ENGINE_SECRET: str = os.getenv("ERP_ENGINE_SECRET", "")
    ERP_INVENTORY_SCHEMA: str = os.getenv("ERP_INVENTORY_SCHEMA", "")
    ERP_WAREHOUSE_SCHEMA: str = os.getenv("ERP_WAREHOUSE_SCHEMA", "")
    ERP_MAPPING_SCHEMA: str = os.getenv("ERP_MAPPING_SCHEMA", "")
    ERP_FIELD_MAP: dict = {**DEFAULT_ERP_FIELD_MAP, **_get_json_map("ERP_FIELD_MAP", {})}

    ERP_PAGE_SIZE: int = _get_int("ERP_PAGE_SIZE", 500)
    ERP_MAX_PAGES: int = _get_int("ERP_MAX_PAGES", 200)
    ERP_PAGE_DELAY: float = _get_float("ERP_PAGE_DELAY", 0.5)
    ERP_MAPPING_LIMIT: int = _get_int("ERP_MAPPING_LIMIT", 10000)

    # ── Upstream HTTP ────────────────────────────────────────────────────────
    HTTP_TIMEOUT: float = _get_float("HTTP_TIMEOUT", 30.0)
    HTTP_VERIFY_SSL: bool = _get_bool("HTTP_VERIFY_SSL", True)
    WC_MAX_PAGES: int = _get_int("WC_MAX_PAGES", 100)

    # ── Batch / sync behaviour ───────────────────────────────────────────────
    SYNC_GROUP: str = os.getenv("SYNC_GROUP", "default")
    BATCH_TTL_MINUTES: int = _get_int("BATCH_TTL_MINUTES", 120)
    LOW_STOCK_BAND: int = _get_int("LOW_STOCK_BAND", 10)
    SYNC_ITEM_DELAY: float = _get_float("SYNC_ITEM_DELAY", 0.2)
    FANOUT_DELAY: float = _get_float("FANOUT_DELAY", 0.1)
    PRODUCT_CACHE_TTL_MINUTES: int = _get_int("PRODUCT_CACHE_TTL_MINUTES", 60)
    MAPPING_CACHE_TTL_SECONDS: int = _get_int("MAPPING_CACHE_TTL_SECONDS", 300)
    # A site result left "running" longer than this is treated as abandoned and re-run
    SITE_STEP_STALE_SECONDS: int = _get_int("SITE_STEP_STALE_SECONDS", 900)

    # ── Worker loop (replaces external self-trigger) ─────────────────────────
    WORKER_ENABLED: bool = _get_bool("WORKER_ENABLED", True)
    WORKER_INTERVAL_SECONDS: float = _get_float("WORKER_INTERVAL_SECONDS", 120.0)

    # ── Notifications ────────────────────────────────────────────────────────
    # Used when the stored sync config carries no webhook of its own
    NOTIFY_WEBHOOK_URL: str = os.getenv("NOTIFY_WEBHOOK_URL", "")

    # ── Admin API ────────────────────────────────────────────────────────────
    ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
    ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list in .env, e.g. "https://example.com, https://foo.bar"
    CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
