# keyshop/services/refunds.py
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from time import perf_counter
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from keyshop.db import atomic
from keyshop.errors import ErrorKind, ShopError
from keyshop.gateways import GatewayRegistry, gateway_error
from keyshop.metrics import keys_released_total, refund_errors, refund_latency, refunds_total
from keyshop.models import FULFILLED_STATUSES, KeyStatus, LicenseKey, Order, OrderStatus, now_utc
from keyshop.services.orders import lock_order, transition

logger = structlog.get_logger(__name__)


@dataclass
class RefundResult:
    success: bool
    order: Order
    refund_amount: Optional[Decimal] = None
    released_key_ids: List[int] = field(default_factory=list)
    already_processed: bool = False


@dataclass
class ReconcileSummary:
    checked: int = 0
    reversed: int = 0
    cleared: int = 0
    errors: int = 0


def release_keys(db: Session, order: Order) -> List[int]:
    """Sold keys of ``order`` back to the pool. Revoked keys keep their link and stay revoked."""
    key_ids = list(
        db.execute(
            select(LicenseKey.id)
            .where(LicenseKey.order_id == order.id, LicenseKey.status == KeyStatus.SOLD)
            .order_by(LicenseKey.id)
            .with_for_update()
        ).scalars()
    )
    if key_ids:
        db.execute(
            update(LicenseKey)
            .where(LicenseKey.id.in_(key_ids), LicenseKey.status == KeyStatus.SOLD)
            .values(status=KeyStatus.AVAILABLE, order_id=None, sold_at=None)
            .execution_options(synchronize_session=False)
        )
    return key_ids


def _apply_reversal(db: Session, order: Order, amount: Decimal, reason: str) -> List[int]:
    released = release_keys(db, order)
    moved = transition(
        db, order, order.status, OrderStatus.REFUNDED,
        refund_amount=amount,
        refund_reason=reason,
        refunded_at=now_utc(),
        refund_requested_at=None,
    )
    if not moved:
        raise ShopError(ErrorKind.VALIDATION, "Order changed while refunding", order_no=order.order_no)
    keys_released_total.inc(len(released))
    return released


def refund_order(
    db: Session,
    gateways: GatewayRegistry,
    order_no: str,
    amount: Optional[Decimal] = None,
    reason: str = "Customer request",
) -> RefundResult:
    """
    Admin refund.

    1. Lock the order, check it is paid/completed and the amount is sane,
       record the refund intent.
    2. Ask the gateway to refund, outside any held transaction (retried on
       transient errors by the registry).
    3. Lock the order again; release every sold key and mark it refunded.

    Partial refunds release all keys of the order; the refunded amount is
    stored on the order.

    A crash between 2 and 3 leaves the intent marker set;
    ``reconcile_refunds`` settles those orders against the gateway.
    """
    start = perf_counter()
    try:
        with atomic(db):
            order = lock_order(db, order_no)
            if order.status == OrderStatus.REFUNDED:
                logger.info("refund_already_processed", order_no=order_no)
                return RefundResult(
                    True, order, refund_amount=order.refund_amount, already_processed=True
                )
            if order.status not in FULFILLED_STATUSES:
                raise ShopError(
                    ErrorKind.VALIDATION,
                    f"Cannot refund order with status: {order.status.value}",
                    order_no=order_no,
                )
            if order.refund_requested_at is not None:
                # one gateway refund per order at a time; stale markers are cleared by reconcile_refunds
                raise ShopError(
                    ErrorKind.VALIDATION,
                    "A refund for this order is already in progress",
                    order_no=order_no,
                )
            total = Decimal(order.total_amount)
            refund_amount = total if amount is None else Decimal(amount)
            if refund_amount <= 0 or refund_amount > total:
                raise ShopError(
                    ErrorKind.VALIDATION,
                    "Refund amount must be positive and not exceed the order total",
                    order_no=order_no,
                )
            method = order.payment_method
            order.refund_requested_at = now_utc()

        try:
            ok = gateways.refund(method, order_no, refund_amount)
        except ShopError:
            # outcome unknown; intent stays for reconciliation
            logger.error("refund_gateway_unreachable", order_no=order_no, payment_method=method)
            raise
        if not ok:
            with atomic(db):
                order = lock_order(db, order_no)
                order.refund_requested_at = None
            raise gateway_error(f"Gateway declined refund for order {order_no}", transient=False)

        with atomic(db):
            order = lock_order(db, order_no)
            if order.status == OrderStatus.REFUNDED:
                return RefundResult(True, order, refund_amount=order.refund_amount, already_processed=True)
            released = _apply_reversal(db, order, refund_amount, reason)

        refunds_total.inc()
        logger.info(
            "order_refunded",
            order_no=order_no,
            refund_amount=str(refund_amount),
            partial=refund_amount < total,
            released_keys=len(released),
            reason=reason,
        )
        return RefundResult(True, order, refund_amount=refund_amount, released_key_ids=released)

    except ShopError as e:
        refund_errors.labels(e.kind.value).inc()
        raise
    finally:
        refund_latency.observe(perf_counter() - start)


def reconcile_refunds(
    db: Session,
    gateways: GatewayRegistry,
    older_than: timedelta = timedelta(minutes=5),
    reason: str = "Reconciled with gateway",
) -> ReconcileSummary:
    """
    Settle refunds whose gateway call outcome was never recorded locally.

    Idempotent: an order the gateway reports as refunded gets the local
    reversal, any other answer clears the intent, gateway errors leave it for
    the next run.
    """
    summary = ReconcileSummary()
    cutoff = now_utc() - older_than
    with atomic(db):
        candidates = [
            (o.order_no, o.payment_method)
            for o in db.execute(
                select(Order).where(
                    Order.status.in_(FULFILLED_STATUSES),
                    Order.refund_requested_at.is_not(None),
                    Order.refund_requested_at < cutoff,
                )
            ).scalars()
        ]

    for order_no, method in candidates:
        summary.checked += 1
        try:
            status = gateways.query_status(method, order_no)
        except ShopError as e:
            summary.errors += 1
            logger.warning("refund_reconcile_query_failed", order_no=order_no, error=e.message)
            continue

        with atomic(db):
            order = lock_order(db, order_no)
            if order.status not in FULFILLED_STATUSES or order.refund_requested_at is None:
                continue
            if status == "refunded":
                released = _apply_reversal(db, order, Decimal(order.total_amount), reason)
                summary.reversed += 1
                logger.warning("refund_reconciled", order_no=order_no, released_keys=len(released))
            else:
                order.refund_requested_at = None
                summary.cleared += 1
                logger.info("refund_intent_cleared", order_no=order_no, gateway_status=status)

    logger.info(
        "refund_reconciliation_finished",
        checked=summary.checked,
        reversed=summary.reversed,
        cleared=summary.cleared,
        errors=summary.errors,
    )
    return summary
