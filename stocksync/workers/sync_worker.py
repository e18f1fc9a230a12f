# ---------------------------
# stocksync/workers/sync_worker.py
# ---------------------------
# In-process step loop: while a batch is active, steps run back to back;
# otherwise the loop sleeps WORKER_INTERVAL_SECONDS between scheduled checks.
import asyncio
import logging
from typing import Callable, Optional

from stocksync.config import settings
from stocksync.sync.orchestrator import BatchOrchestrator, get_orchestrator

logger = logging.getLogger("stocksync.worker")


async def _wait(stop_event: asyncio.Event, seconds: float) -> None:
    if seconds <= 0:
        await asyncio.sleep(0)
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def worker_loop(
    stop_event: asyncio.Event,
    orchestrator_factory: Callable[[], BatchOrchestrator] = get_orchestrator,
    interval: Optional[float] = None,
) -> None:
    interval = settings.WORKER_INTERVAL_SECONDS if interval is None else interval
    logger.info("[WORKER] started (interval=%ss)", interval)

    while not stop_event.is_set():
        has_more = False
        try:
            report = await orchestrator_factory().run_step(manual=False)
            has_more = report.has_more
            if report.action not in ("disabled", "in_progress"):
                logger.info("[WORKER] %s batch=%s step=%d/%d %s", report.action, report.batch_id,
                            report.current_step, report.total_sites, report.message)
        except Exception:
            logger.exception("[WORKER] step failed")
            await _wait(stop_event, 0.5)
            continue
        await _wait(stop_event, 0 if has_more else interval)

    logger.info("[WORKER] stopped")


async def run_until_idle(orchestrator: BatchOrchestrator, manual: bool = False, max_steps: int = 10000) -> int:
    """Drive one batch to a terminal state (or until no progress is possible). Returns steps run."""
    steps = 0
    while steps < max_steps:
        report = await orchestrator.run_step(manual=manual)
        steps += 1
        if not report.has_more:
            break
        # only the first call may start a batch
        manual = False
    return steps
