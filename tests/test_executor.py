import asyncio

import httpx

from stocksync.errors import (
    ConfigurationError,
    ErpApiError,
    StorefrontApiError,
    classify_error,
)
from stocksync.sync.decider import decide
from stocksync.sync.executor import ExecutionOutcome, apply_decision
from stocksync.sync.site_step import aggregate_fanout
from stocksync.woo.client import StorefrontProduct

from conftest import FakeDetector, FakeStoreClient, product


def test_classify_error():
    assert classify_error(StorefrontApiError("gone", status_code=404)) == "not_found"
    assert classify_error(StorefrontApiError("busy", status_code=503)) == "transient"
    assert classify_error(StorefrontApiError("slow down", status_code=429)) == "transient"
    assert classify_error(ErpApiError("no status")) == "transient"
    assert classify_error(StorefrontApiError("bad", status_code=400)) == "failed"
    assert classify_error(httpx.ReadTimeout("timeout")) == "transient"
    assert classify_error(httpx.ConnectError("refused")) == "transient"
    assert classify_error(ConfigurationError("missing")) == "failed"
    assert classify_error(ValueError("boom")) == "failed"


def test_simple_product_update_and_cache_refresh():
    p = product(11, "X", status="outofstock")
    client = FakeStoreClient([p])
    detector = FakeDetector(client)
    d = decide(erp_sku="X", storefront_sku="X", net_stock=5, current_status="outofstock")

    outcome = asyncio.run(apply_decision(client, d, p, detector))

    assert outcome.ok and outcome.action == "to_instock"
    assert client.updates == [(11, {"manage_stock": False, "stock_status": "instock"}, None)]
    assert detector.remembered[0].stock_status == "instock"


def test_variation_is_addressed_under_its_parent():
    p = product(21, "V-RED", status="instock", qty=10, manage=True, parent_id=20)
    client = FakeStoreClient([p])
    d = decide(erp_sku="V", storefront_sku="V-RED", net_stock=2, current_status="instock", current_quantity=10)

    outcome = asyncio.run(apply_decision(client, d, p))

    assert outcome.ok
    assert client.updates == [(21, {"manage_stock": True, "stock_quantity": 2, "stock_status": "instock"}, 20)]


def test_update_failure_is_classified_not_raised():
    p = product(31, "F", status="instock")
    client = FakeStoreClient([p], fail={"F": StorefrontApiError("<html><title>502 Bad Gateway</title></html>", status_code=502)})
    d = decide(erp_sku="F", storefront_sku="F", net_stock=0, current_status="instock")

    outcome = asyncio.run(apply_decision(client, d, p))

    assert not outcome.ok
    assert outcome.error_class == "transient"
    assert "502 Bad Gateway" in outcome.error


def test_cache_refresh_failure_is_not_fatal():
    class BrokenDetector(FakeDetector):
        async def remember(self, product):
            raise RuntimeError("disk full")

    p = product(41, "C", status="outofstock")
    client = FakeStoreClient([p])
    d = decide(erp_sku="C", storefront_sku="C", net_stock=3, current_status="outofstock")

    outcome = asyncio.run(apply_decision(client, d, p, BrokenDetector(client)))
    assert outcome.ok


def _ok(sku, action):
    return ExecutionOutcome(storefront_sku=sku, action=action, ok=True)


def _err(sku, action, msg):
    return ExecutionOutcome(storefront_sku=sku, action=action, ok=False, error_class="failed", error=msg)


def test_partial_fanout_counts_once_as_failed_with_first_error():
    res = aggregate_fanout("P", 4, [
        _ok("P-1", "to_instock"),
        _err("P-2", "to_instock", "HTTP 500"),
        _err("P-3", "to_instock", "HTTP 400"),
    ])
    assert res.status == "failed"
    assert res.error == "partial: 1/3; HTTP 500"
    assert res.storefront_skus == ["P-1", "P-2", "P-3"]


def test_fanout_all_failed_is_not_partial():
    res = aggregate_fanout("P", 4, [_err("P-1", "to_instock", "HTTP 400")])
    assert res.status == "failed"
    assert res.error == "HTTP 400"


def test_fanout_action_priority():
    res = aggregate_fanout("P", 4, [_ok("P-1", "to_instock"), _ok("P-2", "to_quantity"), _ok("P-3", "skip")])
    assert (res.status, res.action) == ("synced", "to_quantity")
    res = aggregate_fanout("P", 0, [_ok("P-1", "to_quantity"), _ok("P-2", "to_outofstock")])
    assert res.action == "to_outofstock"


def test_fanout_not_found_is_skipped():
    missing = ExecutionOutcome(storefront_sku="P-1", action="skip", ok=False, error_class="not_found")
    res = aggregate_fanout("P", 4, [missing])
    assert res.status == "skipped"
    assert res.not_found
    res = aggregate_fanout("P", 4, [missing, _ok("P-2", "skip")])
    assert res.status == "skipped"
    assert not res.not_found


def test_parent_managed_variation_gets_status_updates_only():
    p = StorefrontProduct.from_api({"id": 51, "parent_id": 50, "type": "variation", "sku": "V-BLUE",
                                    "stock_status": "instock", "manage_stock": "parent", "stock_quantity": 12})
    assert p.live_quantity is None
    low = decide(erp_sku="V", storefront_sku="V-BLUE", net_stock=3, current_status="instock",
                 current_quantity=p.live_quantity)
    assert not low.is_change

    client = FakeStoreClient([p])
    empty = decide(erp_sku="V", storefront_sku="V-BLUE", net_stock=0, current_status="instock",
                   current_quantity=p.live_quantity)
    outcome = asyncio.run(apply_decision(client, empty, p))
    assert outcome.ok
    assert client.updates == [(51, {"manage_stock": False, "stock_status": "outofstock"}, 50)]
