from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from keyshop.db import SessionLocal
from keyshop.errors import ErrorKind, ShopError
from keyshop.gateways import gateway_error
from keyshop.models import KeyStatus, LicenseKey, Order, OrderStatus
from keyshop.pricing import TablePricing
from keyshop.services.allocation import available_count
from keyshop.services.callbacks import handle_payment_callback
from keyshop.services.keys import revoke_key
from keyshop.services.orders import create_order
from keyshop.services.refunds import reconcile_refunds, refund_order


def _paid_order(db, gateways, sandbox, product_id, quantity=1):
    order = create_order(
        db, gateways, TablePricing(),
        product_id=product_id,
        email="buyer@example.com",
        payment_method="sandbox",
        client_ip=None,
        quantity=quantity,
    ).order
    params = sandbox.notification(order.order_no, order.total_amount)
    result = handle_payment_callback(db, sandbox.parse_notification(params))
    assert result.completed
    return order, result.key_ids


def test_refund_releases_every_sold_key(db, gateways, sandbox, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 3)
    order, key_ids = _paid_order(db, gateways, sandbox, pid, quantity=2)
    assert available_count(db, pid) == 1

    result = refund_order(db, gateways, order.order_no)

    assert result.success and not result.already_processed
    assert sorted(result.released_key_ids) == sorted(key_ids)
    assert result.refund_amount == Decimal("39.98")
    assert available_count(db, pid) == 3
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == OrderStatus.REFUNDED
    assert stored.refunded_at is not None
    assert stored.refund_requested_at is None
    keys = db.execute(select(LicenseKey).where(LicenseKey.id.in_(key_ids))).scalars().all()
    assert all(k.status == KeyStatus.AVAILABLE and k.order_id is None and k.sold_at is None for k in keys)
    assert sandbox.payments[order.order_no]["status"] == "refunded"


def test_second_refund_is_idempotent(db, gateways, sandbox, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 1)
    order, _ = _paid_order(db, gateways, sandbox, pid)

    refund_order(db, gateways, order.order_no)
    again = refund_order(db, gateways, order.order_no)

    assert again.success and again.already_processed
    assert again.released_key_ids == []


def test_partial_refund_releases_all_keys_and_records_amount(db, gateways, sandbox, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 2)
    order, key_ids = _paid_order(db, gateways, sandbox, pid, quantity=2)

    result = refund_order(db, gateways, order.order_no, amount=Decimal("10.00"), reason="one seat unused")

    assert sorted(result.released_key_ids) == sorted(key_ids)
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.refund_amount == Decimal("10.00")
    assert stored.refund_reason == "one seat unused"


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("100.00")])
def test_refund_amount_must_be_sane(db, gateways, sandbox, make_product, add_keys, amount):
    pid = make_product()
    add_keys(pid, 1)
    order, _ = _paid_order(db, gateways, sandbox, pid)

    with pytest.raises(ShopError) as exc:
        refund_order(db, gateways, order.order_no, amount=amount)
    assert exc.value.kind is ErrorKind.VALIDATION


def test_pending_order_cannot_be_refunded(db, gateways, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 1)
    order = create_order(
        db, gateways, TablePricing(), product_id=pid, email="b@example.com",
        payment_method="sandbox", client_ip=None,
    ).order

    with pytest.raises(ShopError) as exc:
        refund_order(db, gateways, order.order_no)
    assert exc.value.kind is ErrorKind.VALIDATION


def test_gateway_decline_keeps_order_and_keys(db, gateways, sandbox, make_product, add_keys, monkeypatch):
    pid = make_product()
    add_keys(pid, 1)
    order, key_ids = _paid_order(db, gateways, sandbox, pid)
    monkeypatch.setattr(sandbox, "refund", lambda order_no, amount: False)

    with pytest.raises(ShopError) as exc:
        refund_order(db, gateways, order.order_no)

    assert exc.value.kind is ErrorKind.GATEWAY
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.refund_requested_at is None
    assert db.get(LicenseKey, key_ids[0]).status == KeyStatus.SOLD


def test_revoked_key_stays_revoked_after_refund(db, gateways, sandbox, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 2)
    order, key_ids = _paid_order(db, gateways, sandbox, pid, quantity=2)
    revoke_key(db, key_ids[0], "leaked")

    result = refund_order(db, gateways, order.order_no)

    assert result.released_key_ids == [key_ids[1]]
    db.expire_all()
    assert db.get(LicenseKey, key_ids[0]).status == KeyStatus.REVOKED
    assert available_count(db, pid) == 1


def test_unreachable_gateway_leaves_intent_for_reconciliation(
    db, gateways, sandbox, make_product, add_keys, monkeypatch
):
    pid = make_product()
    add_keys(pid, 1)
    order, key_ids = _paid_order(db, gateways, sandbox, pid)

    calls = []

    def refund_then_timeout(order_no, amount):
        # the gateway does refund, but the answer never reaches us
        calls.append(order_no)
        sandbox.payments[order_no]["status"] = "refunded"
        raise gateway_error("sandbox timed out", transient=True)

    monkeypatch.setattr(sandbox, "refund", refund_then_timeout)

    with pytest.raises(ShopError) as exc:
        refund_order(db, gateways, order.order_no)
    assert exc.value.kind is ErrorKind.GATEWAY
    assert len(calls) == gateways.retry_attempts

    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.refund_requested_at is not None

    summary = reconcile_refunds(db, gateways, older_than=timedelta(0))
    assert (summary.checked, summary.reversed, summary.cleared, summary.errors) == (1, 1, 0, 0)
    db.expire_all()
    assert db.get(Order, order.id).status == OrderStatus.REFUNDED
    assert db.get(LicenseKey, key_ids[0]).status == KeyStatus.AVAILABLE

    # nothing left to do on the next run
    assert reconcile_refunds(db, gateways, older_than=timedelta(0)).checked == 0


def test_reconcile_clears_intent_when_gateway_did_not_refund(db, gateways, sandbox, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 1)
    order, _ = _paid_order(db, gateways, sandbox, pid)
    stored = db.get(Order, order.id)
    stored.refund_requested_at = stored.created_at - timedelta(hours=1)
    db.commit()

    summary = reconcile_refunds(db, gateways)

    assert summary.cleared == 1
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.refund_requested_at is None


def test_overlapping_refund_is_rejected_while_gateway_call_is_in_flight(
    db, gateways, sandbox, make_product, add_keys, monkeypatch
):
    pid = make_product()
    add_keys(pid, 1)
    order, key_ids = _paid_order(db, gateways, sandbox, pid)

    real_refund = sandbox.refund
    calls = []
    overlapping = []

    def refund_while_admin_retries(order_no, amount):
        calls.append(order_no)
        # a second admin click lands while the first gateway call is pending
        with SessionLocal() as other:
            try:
                refund_order(other, gateways, order_no)
            except ShopError as e:
                overlapping.append(e)
        return real_refund(order_no, amount)

    monkeypatch.setattr(sandbox, "refund", refund_while_admin_retries)

    result = refund_order(db, gateways, order.order_no)

    assert calls == [order.order_no]
    assert len(overlapping) == 1
    assert overlapping[0].kind is ErrorKind.VALIDATION
    assert overlapping[0].message == "A refund for this order is already in progress"
    assert result.success and not result.already_processed
    assert result.released_key_ids == key_ids


def test_refund_rejected_while_intent_is_pending(db, gateways, sandbox, make_product, add_keys, monkeypatch):
    pid = make_product()
    add_keys(pid, 1)
    order, _ = _paid_order(db, gateways, sandbox, pid)
    stored = db.get(Order, order.id)
    stored.refund_requested_at = stored.created_at
    db.commit()
    calls = []
    monkeypatch.setattr(sandbox, "refund", lambda order_no, amount: calls.append(order_no) or True)

    with pytest.raises(ShopError) as exc:
        refund_order(db, gateways, order.order_no)

    assert exc.value.kind is ErrorKind.VALIDATION
    assert calls == []
    db.expire_all()
    assert db.get(Order, order.id).status == OrderStatus.COMPLETED
