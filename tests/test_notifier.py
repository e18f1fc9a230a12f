import asyncio
import json
from datetime import datetime, timedelta

import httpx

from stocksync.config import settings
from stocksync.models.sync import AutoSyncConfig, SiteResult, SyncBatch
from stocksync.notify.notifier import (
    Notifier,
    aggregate_site_results,
    build_failure_report,
    build_report,
    overall_status,
    should_notify,
)

from conftest import RecordingNotifier


def site_result(name, step, status="completed", instock=0, outofstock=0, quantity=0, failed=0, skipped=0,
                checked=0, details=None, error=None):
    return SiteResult(
        batch_id="b1", site_id=name.lower(), site_name=name, step_index=step, status=status,
        total_checked=checked, synced_to_instock=instock, synced_to_outofstock=outofstock,
        synced_quantity=quantity, failed=failed, skipped=skipped, details=details or [], error_message=error,
    )


def config(**kw):
    base = dict(name="default", notify_on_success=True, notify_on_failure=True, notify_on_no_changes=False,
                notify_webhook_url=None)
    base.update(kw)
    return AutoSyncConfig(**base)


def batch():
    now = datetime(2026, 1, 1, 12, 0, 0)
    return SyncBatch(id="b1", sync_group="default", status="completed", current_step=3, total_sites=2,
                     error_message=None, created_at=now, expires_at=now + timedelta(hours=2))


def test_overall_status():
    assert overall_status(failed=0, failed_sites=0, changes=3) == "success"
    assert overall_status(failed=0, failed_sites=0, changes=0) == "no_changes"
    assert overall_status(failed=1, failed_sites=0, changes=3) == "partial"
    assert overall_status(failed=0, failed_sites=1, changes=0) == "partial"


def test_aggregate_totals_and_duration():
    results = [
        site_result("A", 1, instock=2, outofstock=1, checked=10, skipped=7),
        site_result("B", 2, quantity=1, failed=1, checked=5, skipped=3),
    ]
    start = datetime(2026, 1, 1, 12, 0, 0)
    s = aggregate_site_results(results, start, start + timedelta(minutes=3))
    assert (s.total_checked, s.synced_to_instock, s.synced_to_outofstock, s.synced_quantity) == (15, 2, 1, 1)
    assert (s.failed, s.skipped, s.total_sites) == (1, 10, 2)
    assert s.duration_seconds == 180
    assert s.overall_status == "partial"


def test_report_lists_capped_skus_failures_and_unchanged_sites():
    synced = [{"erp_sku": f"SKU{i}", "status": "synced", "action": "to_instock"} for i in range(12)]
    failures = [{"erp_sku": f"BAD{i}", "status": "failed", "action": "to_instock", "error": f"HTTP 50{i}"} for i in range(7)]
    results = [
        site_result("Changed", 1, instock=12, failed=7, details=synced + failures),
        site_result("Quiet", 2),
        site_result("Broken", 3, status="failed", error="site gone"),
    ]
    summary = aggregate_site_results(results)
    title, body = build_report(batch(), results, summary)

    assert title == "Stock sync finished with failures"
    assert "to instock (12): SKU0" in body
    assert "SKU9" in body and "SKU10," not in body and "(+2 more)" in body
    assert "BAD4: HTTP 504" in body and "BAD5" not in body
    assert "site failed: site gone" in body
    assert "Unchanged: Quiet" in body


def test_failure_report_carries_error():
    b = batch()
    b.status, b.error_message, b.current_step = "failed", "ERP configuration incomplete", 0
    title, body = build_failure_report(b)
    assert title == "Stock sync failed"
    assert "ERP configuration incomplete" in body


def test_notification_gating():
    cfg = config(notify_on_success=False, notify_on_no_changes=True)
    assert not should_notify(cfg, "success")
    assert should_notify(cfg, "no_changes")
    assert should_notify(cfg, "partial")
    assert should_notify(cfg, "failed")
    assert not should_notify(config(notify_on_failure=False), "failed")


def test_notify_completed_respects_flags():
    async def scenario():
        n = RecordingNotifier()
        results = [site_result("A", 1, instock=1, details=[{"erp_sku": "X", "status": "synced", "action": "to_instock"}])]
        summary = aggregate_site_results(results)
        await n.notify_completed(config(notify_on_success=False), batch(), results, summary)
        muted = len(n.sent)
        await n.notify_completed(config(), batch(), results, summary)
        return muted, n.sent

    muted, sent = asyncio.run(scenario())
    assert muted == 0
    assert len(sent) == 1 and sent[0]["success"] is True


_REAL_ASYNC_CLIENT = httpx.AsyncClient


def _patch_transport(monkeypatch, handler):
    def factory(**kw):
        return _REAL_ASYNC_CLIENT(transport=httpx.MockTransport(handler), **kw)

    monkeypatch.setattr(httpx, "AsyncClient", factory)


def test_send_posts_markdown_message(monkeypatch):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})

    _patch_transport(monkeypatch, handler)
    ok = asyncio.run(Notifier().send("Stock sync finished", "> body", True, "https://hook.example/send?key=1"))
    assert ok
    assert seen == [{"msgtype": "markdown", "markdown": {"content": "### ✅ Stock sync finished\n> body"}}]


def test_send_failures_are_reported_not_raised(monkeypatch):
    def rejected(request):
        return httpx.Response(200, json={"errcode": 93000, "errmsg": "invalid webhook url"})

    _patch_transport(monkeypatch, rejected)
    assert asyncio.run(Notifier().send("t", "b", False, "https://hook.example/x")) is False

    def broken(request):
        raise httpx.ConnectError("refused", request=request)

    _patch_transport(monkeypatch, broken)
    assert asyncio.run(Notifier().send("t", "b", False, "https://hook.example/x")) is False


def test_send_without_webhook_is_skipped(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFY_WEBHOOK_URL", "")
    assert asyncio.run(Notifier().send("t", "b", True)) is False
