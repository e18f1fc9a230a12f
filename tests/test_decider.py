import itertools

import pytest

from stocksync.sync.decider import SyncDecision, decide


def _decide(status, net, qty=None, threshold=None, **kw):
    return decide(erp_sku="E", storefront_sku="S", net_stock=net, current_status=status,
                  current_quantity=qty, custom_threshold=threshold, low_stock_band=10, **kw)


@pytest.mark.parametrize(
    "status,net,qty,threshold,action,target_status,target_qty",
    [
        ("instock", 0, None, None, "to_outofstock", "outofstock", None),
        ("instock", -4, 3, None, "to_outofstock", "outofstock", None),
        ("instock", 15, None, 20, "to_outofstock", "outofstock", None),   # custom threshold rule
        ("instock", 3, 10, None, "to_quantity", "instock", 3),            # anti-oversell
        ("instock", 8, 5, None, "skip", None, None),                      # live already lower
        ("instock", 3, None, None, "skip", None, None),                   # live quantity unknown
        ("instock", 3, 10, 1, "skip", None, None),                        # custom threshold: no quantity sync
        ("instock", 11, 20, None, "skip", None, None),                    # above the band
        ("outofstock", 5, None, None, "to_instock", "instock", None),
        ("outofstock", 20, None, 20, "skip", None, None),
        ("outofstock", 0, None, None, "skip", None, None),
        ("onbackorder", 5, None, None, "skip", None, None),
    ],
)
def test_rule_table(status, net, qty, threshold, action, target_status, target_qty):
    d = _decide(status, net, qty, threshold)
    assert d.action == action
    assert d.target_status == target_status
    assert d.target_quantity == target_qty


def test_disabled_directions_downgrade_to_skip():
    assert _decide("outofstock", 5, allow_to_instock=False).action == "skip"
    assert _decide("instock", 0, allow_to_outofstock=False).action == "skip"
    assert _decide("instock", 3, 10, allow_to_instock=False).action == "skip"
    assert _decide("instock", 3, 10, allow_to_outofstock=False).action == "to_quantity"
    assert _decide("outofstock", 5, allow_to_outofstock=False).action == "to_instock"


def test_status_payloads_disable_stock_management():
    assert _decide("outofstock", 5).payload() == {"manage_stock": False, "stock_status": "instock"}
    assert _decide("instock", 0).payload() == {"manage_stock": False, "stock_status": "outofstock"}


def test_quantity_payload_floor_forces_outofstock():
    d = SyncDecision(erp_sku="E", storefront_sku="S", net_stock=0, current_status="instock",
                     action="to_quantity", target_status="instock", target_quantity=0)
    assert d.payload() == {"manage_stock": True, "stock_quantity": 0, "stock_status": "outofstock"}
    assert _decide("instock", 3, 10).payload() == {"manage_stock": True, "stock_quantity": 3, "stock_status": "instock"}


def _apply(d: SyncDecision):
    """Storefront state after the decision's payload is written."""
    payload = d.payload()
    status = payload["stock_status"]
    qty = payload["stock_quantity"] if payload.get("manage_stock") else None
    return status, qty


STATUSES = ("instock", "outofstock")
NETS = range(-3, 25)
QTYS = (None, 0, 1, 3, 10, 30)
THRESHOLDS = (None, 0, 5, 20)


def test_decider_is_idempotent():
    for status, net, qty, thr in itertools.product(STATUSES, NETS, QTYS, THRESHOLDS):
        first = _decide(status, net, qty, thr)
        if not first.is_change:
            continue
        new_status, new_qty = _apply(first)
        again = _decide(new_status, net, new_qty, thr)
        assert again.action == "skip", (status, net, qty, thr, first.action, again.action)


def test_quantity_target_never_exceeds_erp_or_live_stock():
    for net, qty in itertools.product(NETS, QTYS):
        d = _decide("instock", net, qty)
        if d.action == "to_quantity":
            assert d.target_quantity <= net
            assert d.target_quantity <= qty
