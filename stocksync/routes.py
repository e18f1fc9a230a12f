#=======================================================================================
# stocksync/routes.py
# FastAPI routes for the stock sync dispatcher, batch status and product cache refresh.
#
# All routes require HTTP Basic (admin). Include with NO extra prefix:
#   from stocksync.routes import router as api_router
#   app.include_router(api_router)
#=======================================================================================
import logging
import secrets
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from stocksync.config import settings
from stocksync.db import utcnow
from stocksync.models.sync import SiteResult, SyncBatch
from stocksync.sync import batch_store as store
from stocksync.sync.orchestrator import BatchOrchestrator, get_orchestrator
from stocksync.woo.product_cache import refresh_site_cache

logger = logging.getLogger("stocksync.api")

router = APIRouter(prefix="/api", tags=["Stock Sync"])

# ---------------------------
# HTTP Basic
# ---------------------------
security = HTTPBasic()


def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
    ok_user = secrets.compare_digest(credentials.username or "", settings.ADMIN_USER or "")
    ok_pass = secrets.compare_digest(credentials.password or "", settings.ADMIN_PASS or "")
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )


# ---------------------------
# Helpers
# ---------------------------
def _result_view(r: SiteResult) -> Dict[str, Any]:
    return {
        "site_id": r.site_id,
        "site_name": r.site_name,
        "step_index": r.step_index,
        "status": r.status,
        "total_checked": r.total_checked,
        "synced_to_instock": r.synced_to_instock,
        "synced_to_outofstock": r.synced_to_outofstock,
        "synced_quantity": r.synced_quantity,
        "failed": r.failed,
        "skipped": r.skipped,
        "error_message": r.error_message,
        "details": r.details or [],
        "diagnostics": r.diagnostics or {},
        "started_at": r.started_at.isoformat() if r.started_at else None,
        "completed_at": r.completed_at.isoformat() if r.completed_at else None,
    }


def _batch_view(b: SyncBatch, results: List[SiteResult]) -> Dict[str, Any]:
    return {
        "id": b.id,
        "sync_group": b.sync_group,
        "status": b.status,
        "current_step": b.current_step,
        "total_sites": b.total_sites,
        "site_ids": b.site_ids or [],
        "stats": b.stats or {},
        "error_message": b.error_message,
        "created_at": b.created_at.isoformat() if b.created_at else None,
        "started_at": b.started_at.isoformat() if b.started_at else None,
        "completed_at": b.completed_at.isoformat() if b.completed_at else None,
        "expires_at": b.expires_at.isoformat() if b.expires_at else None,
        "sites": [_result_view(r) for r in results],
    }


# ---------------------------
# Dispatcher
# ---------------------------
@router.post("/sync/dispatch", dependencies=[Depends(verify_admin)])
async def dispatch_manual(orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    """Run exactly one step; starts a batch even while auto sync is disabled."""
    report = await orchestrator.run_step(manual=True)
    logger.info("[API] manual dispatch -> %s batch=%s", report.action, report.batch_id)
    return report.model_dump()


@router.get("/sync/dispatch", dependencies=[Depends(verify_admin)])
async def dispatch_scheduled(orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    """Scheduler entry point; honours the auto sync enabled switch."""
    report = await orchestrator.run_step(manual=False)
    return report.model_dump()


# ---------------------------
# Batch status
# ---------------------------
@router.get("/sync/batches/current", dependencies=[Depends(verify_admin)])
async def current_batch(orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    async with orchestrator.sessionmaker() as session:
        batch = await store.find_active_batch(session, orchestrator.group, utcnow())
        if batch is None:
            return {"batch": None}
        results = await store.get_site_results(session, batch.id)
        return {"batch": _batch_view(batch, results)}


@router.get("/sync/batches/{batch_id}", dependencies=[Depends(verify_admin)])
async def batch_detail(batch_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    async with orchestrator.sessionmaker() as session:
        batch = await store.get_batch(session, batch_id)
        if batch is None:
            raise HTTPException(status_code=404, detail="batch not found")
        results = await store.get_site_results(session, batch.id)
        return {"batch": _batch_view(batch, results)}


# ---------------------------
# Product cache
# ---------------------------
@router.post("/sync/sites/{site_id}/product-cache/refresh", dependencies=[Depends(verify_admin)])
async def refresh_product_cache(site_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    async with orchestrator.sessionmaker() as session:
        site = await store.get_site(session, site_id)
    if site is None:
        raise HTTPException(status_code=404, detail="site not found")
    counts = await refresh_site_cache(orchestrator.sessionmaker, site.id, orchestrator.client_factory(site))
    return {"site_id": site.id, **counts}


@router.get("/health")
async def health():
    return {"status": "ok"}
