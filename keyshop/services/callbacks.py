# keyshop/services/callbacks.py
from dataclasses import dataclass, field
from decimal import Decimal
from time import perf_counter
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from keyshop.config import settings
from keyshop.db import atomic
from keyshop.errors import ErrorKind, ShopError
from keyshop.gateways import SUCCESS
from keyshop.metrics import amount_mismatches_total, callback_latency, callbacks_total
from keyshop.models import OrderStatus, now_utc
from keyshop.notifications import Mailer, NotificationChannel
from keyshop.schemas import PaymentNotice
from keyshop.services.allocation import allocate
from keyshop.services.keys import decrypt_for_delivery, sold_keys
from keyshop.services.orders import get_order, lock_order, order_summary, transition
from keyshop.vault import KeyVault

logger = structlog.get_logger(__name__)


@dataclass
class CallbackResult:
    success: bool
    message: str
    order_no: str
    status: OrderStatus
    allocated: Dict[int, List[int]] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return bool(self.allocated)

    @property
    def key_ids(self) -> List[int]:
        return [key_id for ids in self.allocated.values() for key_id in ids]


def handle_payment_callback(
    db: Session,
    notice: PaymentNotice,
    alerter=None,
    notifier: Optional[NotificationChannel] = None,
    tolerance: Optional[Decimal] = None,
) -> CallbackResult:
    """
    Idempotent payment notification handling.

    One transaction, order row locked:
      * order not pending        -> success, "already processed", no side effects
      * amount off by > tolerance -> AmountMismatch, nothing written
      * status == success        -> pending->completed (compare-and-set), allocate keys
      * anything else            -> pending->cancelled, keys untouched

    Any error inside rolls the whole thing back, so a failed allocation leaves
    the order pending for a later redelivery. The low-stock hook runs only
    after commit and cannot undo it.
    """
    start = perf_counter()
    tolerance = settings.amount_tolerance if tolerance is None else tolerance

    try:
        with atomic(db):
            order = lock_order(db, notice.order_no)

            if order.status != OrderStatus.PENDING:
                result = CallbackResult(True, "Order already processed", order.order_no, order.status)
            else:
                expected = Decimal(order.total_amount)
                if abs(Decimal(notice.amount) - expected) > tolerance:
                    raise ShopError(
                        ErrorKind.AMOUNT_MISMATCH,
                        f"Payment amount mismatch for order {order.order_no}. "
                        f"Expected: {expected}, Got: {notice.amount}",
                        order_no=order.order_no,
                        expected=str(expected),
                        received=str(notice.amount),
                    )

                if notice.status == SUCCESS:
                    moved = transition(
                        db, order, OrderStatus.PENDING, OrderStatus.COMPLETED,
                        transaction_id=notice.transaction_id, paid_at=now_utc(),
                    )
                    if not moved:
                        result = CallbackResult(True, "Order already processed", order.order_no, order.status)
                    else:
                        allocated = allocate(db, order)
                        result = CallbackResult(
                            True, "Order completed", order.order_no, OrderStatus.COMPLETED, allocated
                        )
                else:
                    transition(
                        db, order, OrderStatus.PENDING, OrderStatus.CANCELLED,
                        transaction_id=notice.transaction_id,
                    )
                    result = CallbackResult(False, "Payment failed", order.order_no, OrderStatus.CANCELLED)

    except ShopError as e:
        callbacks_total.labels("rejected").inc()
        if e.kind is ErrorKind.AMOUNT_MISMATCH:
            _flag_amount_mismatch(e, notice, notifier)
        else:
            logger.warning(
                "payment_callback_rejected",
                order_no=notice.order_no,
                kind=e.kind.value,
                error=e.message,
            )
        raise
    finally:
        callback_latency.observe(perf_counter() - start)

    if result.completed:
        callbacks_total.labels("completed").inc()
        logger.info(
            "order_completed",
            order_no=result.order_no,
            transaction_id=notice.transaction_id,
            key_count=len(result.key_ids),
        )
        _after_allocation(db, alerter, list(result.allocated))
    elif result.status == OrderStatus.CANCELLED and not result.success:
        callbacks_total.labels("cancelled").inc()
        logger.info("order_payment_failed", order_no=result.order_no, gateway_status=notice.status)
    else:
        callbacks_total.labels("already_processed").inc()
        logger.info("payment_callback_already_processed", order_no=result.order_no, status=result.status.value)

    return result


def _flag_amount_mismatch(
    error: ShopError, notice: PaymentNotice, notifier: Optional[NotificationChannel]
) -> None:
    amount_mismatches_total.inc()
    logger.error(
        "payment_amount_mismatch",
        order_no=notice.order_no,
        transaction_id=notice.transaction_id,
        expected=error.details.get("expected"),
        received=error.details.get("received"),
        review=True,
    )
    if notifier is None:
        return
    try:
        notifier.send(
            f"Payment amount mismatch: {notice.order_no}",
            f"Order {notice.order_no} expected {error.details.get('expected')}, "
            f"gateway reported {error.details.get('received')} "
            f"(transaction {notice.transaction_id}). Manual review required.",
        )
    except Exception:
        logger.exception("amount_mismatch_alert_failed", order_no=notice.order_no)


def _after_allocation(db: Session, alerter, product_ids: List[int]) -> None:
    if alerter is None or not product_ids:
        return
    try:
        alerter.after_allocation(db, product_ids)
    except Exception:
        # alerting is advisory; the order is already committed
        logger.exception("low_stock_hook_failed", product_ids=product_ids)
    finally:
        if db.in_transaction():
            db.rollback()


def send_order_confirmation(
    session_factory: Callable[[], Session],
    vault: KeyVault,
    mailer: Mailer,
    order_no: str,
) -> bool:
    """
    Fire-and-forget confirmation mail carrying the decrypted keys.

    Runs after the callback transaction committed; failures are logged and
    reported as False, never raised.
    """
    try:
        with session_factory() as db:
            order = get_order(db, order_no)
            if order.status != OrderStatus.COMPLETED:
                logger.info("order_confirmation_skipped", order_no=order_no, status=order.status.value)
                return False
            email = order.email
            summary = order_summary(order)
            keys = decrypt_for_delivery(vault, sold_keys(db, order.id))

        sent = mailer.send_order_confirmation(email, summary, keys)
        if not sent:
            logger.error("order_confirmation_not_sent", order_no=order_no)
        return bool(sent)
    except Exception:
        logger.exception("order_confirmation_failed", order_no=order_no)
        return False
