#===========================================================================
# stocksync/notify/notifier.py
# Batch summary aggregation and the consolidated report sent to a
# group-robot webhook (WeCom markdown message shape).
#===========================================================================
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel

from stocksync.config import settings
from stocksync.logging_filters import summarize_body
from stocksync.models.sync import SITE_FAILED, AutoSyncConfig, SiteResult, SyncBatch

logger = logging.getLogger("stocksync.notify")

STATUS_SUCCESS = "success"
STATUS_NO_CHANGES = "no_changes"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

MAX_SKUS_PER_DIRECTION = 10
MAX_FAILURES_PER_SITE = 5

_DIRECTION_LABELS = (
    ("to_instock", "to instock"),
    ("to_outofstock", "to out of stock"),
    ("to_quantity", "quantity"),
)


class BatchSummary(BaseModel):
    total_sites: int = 0
    failed_sites: int = 0
    total_checked: int = 0
    synced_to_instock: int = 0
    synced_to_outofstock: int = 0
    synced_quantity: int = 0
    failed: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    overall_status: str = STATUS_NO_CHANGES

    @property
    def changes(self) -> int:
        return self.synced_to_instock + self.synced_to_outofstock + self.synced_quantity


def overall_status(failed: int, failed_sites: int, changes: int) -> str:
    if failed or failed_sites:
        return STATUS_PARTIAL
    return STATUS_SUCCESS if changes else STATUS_NO_CHANGES


def aggregate_site_results(
    results: Sequence[SiteResult],
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
) -> BatchSummary:
    s = BatchSummary(total_sites=len(results))
    for r in results:
        s.total_checked += r.total_checked or 0
        s.synced_to_instock += r.synced_to_instock or 0
        s.synced_to_outofstock += r.synced_to_outofstock or 0
        s.synced_quantity += r.synced_quantity or 0
        s.failed += r.failed or 0
        s.skipped += r.skipped or 0
        if r.status == SITE_FAILED:
            s.failed_sites += 1
    if started_at and finished_at:
        s.duration_seconds = max(0.0, (finished_at - started_at).total_seconds())
    s.overall_status = overall_status(s.failed, s.failed_sites, s.changes)
    return s


def should_notify(config: AutoSyncConfig, status: str) -> bool:
    if status == STATUS_SUCCESS:
        return bool(config.notify_on_success)
    if status == STATUS_NO_CHANGES:
        return bool(config.notify_on_no_changes)
    return bool(config.notify_on_failure)


def _site_lines(result: SiteResult) -> List[str]:
    details: List[Dict[str, Any]] = result.details or []
    lines = [f"**{result.site_name or result.site_id}**"]
    if result.status == SITE_FAILED:
        lines.append(f"- site failed: {result.error_message or 'unknown error'}")
    for action, label in _DIRECTION_LABELS:
        skus = [d["erp_sku"] for d in details if d.get("status") == "synced" and d.get("action") == action]
        if skus:
            more = f" (+{len(skus) - MAX_SKUS_PER_DIRECTION} more)" if len(skus) > MAX_SKUS_PER_DIRECTION else ""
            lines.append(f"- {label} ({len(skus)}): {', '.join(skus[:MAX_SKUS_PER_DIRECTION])}{more}")
    failures = [d for d in details if d.get("status") == "failed"]
    if failures:
        lines.append(f"- failed ({len(failures)}):")
        for d in failures[:MAX_FAILURES_PER_SITE]:
            lines.append(f"  - {d.get('erp_sku')}: {d.get('error') or 'unknown error'}")
    return lines


def build_report(batch: SyncBatch, results: Sequence[SiteResult], summary: BatchSummary) -> Tuple[str, str]:
    title = {
        STATUS_SUCCESS: "Stock sync finished",
        STATUS_NO_CHANGES: "Stock sync finished, nothing to change",
        STATUS_PARTIAL: "Stock sync finished with failures",
    }.get(summary.overall_status, "Stock sync finished")
    lines = [
        f"> Sites: {summary.total_sites}  Checked: {summary.total_checked}  "
        f"Duration: {summary.duration_seconds / 60:.1f} min",
        f"> To instock: {summary.synced_to_instock}  To out of stock: {summary.synced_to_outofstock}  "
        f"Quantity: {summary.synced_quantity}  Failed: {summary.failed}  Skipped: {summary.skipped}",
        "",
    ]
    unchanged = []
    for r in results:
        changed = (r.synced_to_instock or r.synced_to_outofstock or r.synced_quantity or r.failed
                   or r.status == SITE_FAILED)
        if changed:
            lines.extend(_site_lines(r))
            lines.append("")
        else:
            unchanged.append(r.site_name or r.site_id)
    if unchanged:
        lines.append(f"Unchanged: {', '.join(unchanged)}")
    lines.append(f"<font color=\"comment\">batch {batch.id}</font>")
    return title, "\n".join(lines).strip()


def build_failure_report(batch: SyncBatch) -> Tuple[str, str]:
    body = "\n".join([
        f"> Error: {batch.error_message or 'unknown error'}",
        f"> Step: {batch.current_step}/{batch.total_sites}",
        f"<font color=\"comment\">batch {batch.id}</font>",
    ])
    return "Stock sync failed", body


class Notifier:
    """Best effort: a delivery failure is logged and reported as False, never raised."""

    def __init__(self, webhook_url: str | None = None, timeout: float | None = None):
        self.webhook_url = webhook_url
        self.timeout = timeout or settings.HTTP_TIMEOUT

    def _resolve_url(self, config: AutoSyncConfig | None) -> str:
        return (
            (config.notify_webhook_url if config is not None else None)
            or self.webhook_url
            or settings.NOTIFY_WEBHOOK_URL
            or ""
        )

    async def send(self, title: str, body: str, success: bool, webhook_url: str | None = None) -> bool:
        url = webhook_url or self.webhook_url or settings.NOTIFY_WEBHOOK_URL
        if not url:
            logger.info("[NOTIFY] no webhook configured; skipping %r", title)
            return False
        icon = "✅" if success else "❌"
        payload = {"msgtype": "markdown", "markdown": {"content": f"### {icon} {title}\n{body}"}}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, verify=settings.HTTP_VERIFY_SSL) as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("[NOTIFY] delivery failed: %s", e)
            return False
        if resp.status_code != 200:
            logger.warning("[NOTIFY] webhook HTTP %s: %s", resp.status_code, summarize_body(resp.text))
            return False
        try:
            errcode = (resp.json() or {}).get("errcode", 0)
        except ValueError:
            errcode = 0
        if errcode not in (0, None):
            logger.warning("[NOTIFY] webhook rejected message: %s", summarize_body(resp.text))
            return False
        logger.info("[NOTIFY] sent %r", title)
        return True

    async def notify_completed(
        self,
        config: AutoSyncConfig,
        batch: SyncBatch,
        results: Sequence[SiteResult],
        summary: BatchSummary,
    ) -> bool:
        if not should_notify(config, summary.overall_status):
            logger.info("[NOTIFY] %s batch %s: notification disabled", summary.overall_status, batch.id)
            return False
        title, body = build_report(batch, results, summary)
        return await self.send(title, body, summary.overall_status != STATUS_PARTIAL, self._resolve_url(config))

    async def notify_failed(self, config: AutoSyncConfig, batch: SyncBatch) -> bool:
        if not should_notify(config, STATUS_FAILED):
            return False
        title, body = build_failure_report(batch)
        return await self.send(title, body, False, self._resolve_url(config))
