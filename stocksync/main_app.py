#=================================================================
# stocksync/main_app.py
# FastAPI application entry-point.
#=================================================================

import logging, asyncio

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from stocksync.routes import router as api_router
from stocksync.workers.sync_worker import worker_loop
from stocksync.db import init_db, dispose_engine
from stocksync.config import settings
from stocksync.logging_filters import install_html_trim_filter

# --- FastAPI instance ---
app = FastAPI(
    title="ERP → WooCommerce Stock Sync",
    description="Reconciles ERP warehouse stock with the stock status of several WooCommerce sites.",
)

# --- Logging setup (console) ---
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("stocksync")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
install_html_trim_filter()

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)   # /api/*

# --- Root endpoint ---
@app.get("/")
async def home():
    return {"status": "running", "service": "stocksync"}

# --- Global error handler (keeps full stack trace in logs) ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Request failed: {str(exc)}"},
    )

# ---- Background worker lifecycle ----
_worker_task: asyncio.Task | None = None
_worker_stop: asyncio.Event | None = None

@app.on_event("startup")
async def _startup():
    await init_db()
    global _worker_task, _worker_stop
    if not settings.WORKER_ENABLED:
        logger.info("[WORKER] disabled by WORKER_ENABLED")
        return
    _worker_stop = asyncio.Event()
    _worker_task = asyncio.create_task(worker_loop(_worker_stop))

@app.on_event("shutdown")
async def _shutdown():
    global _worker_task, _worker_stop
    if _worker_stop:
        _worker_stop.set()
    if _worker_task:
        try:
            await asyncio.wait_for(_worker_task, timeout=5.0)
        except Exception:
            _worker_task.cancel()
    await dispose_engine()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
