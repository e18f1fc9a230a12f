# stocksync/scripts/run_dispatcher.py
#
# Cron-style trigger for the batch dispatcher.
#
#   python -m stocksync.scripts.run_dispatcher              # one scheduled step
#   python -m stocksync.scripts.run_dispatcher --manual     # one step, ignores the enabled switch
#   python -m stocksync.scripts.run_dispatcher --until-idle # drive the batch to its end
import argparse
import asyncio
import json
import logging

from stocksync.config import settings
from stocksync.db import dispose_engine, init_db
from stocksync.logging_filters import install_html_trim_filter
from stocksync.sync.orchestrator import BatchOrchestrator
from stocksync.workers.sync_worker import run_until_idle

logger = logging.getLogger("stocksync.cli")


async def main(manual: bool, until_idle: bool) -> int:
    await init_db()
    try:
        orchestrator = BatchOrchestrator()
        if until_idle:
            steps = await run_until_idle(orchestrator, manual=manual)
            logger.info("[CLI] ran %d step(s)", steps)
        else:
            report = await orchestrator.run_step(manual=manual)
            print(json.dumps(report.model_dump(), indent=2))
    finally:
        await dispose_engine()
    return 0


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Run the stock sync dispatcher")
    ap.add_argument("--manual", action="store_true", help="start a batch even when auto sync is disabled")
    ap.add_argument("--until-idle", action="store_true", help="keep stepping until the batch is finished")
    args = ap.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s | %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    install_html_trim_filter()
    raise SystemExit(asyncio.run(main(args.manual, args.until_idle)))
