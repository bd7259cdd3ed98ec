# keyshop/services/orders.py
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keyshop.config import settings
from keyshop.db import atomic
from keyshop.errors import ErrorKind, ShopError
from keyshop.gateways import GatewayRegistry, PaymentSession
from keyshop.metrics import orders_cancelled_total, orders_created_total
from keyshop.models import (
    FULFILLED_STATUSES, Order, OrderItem, OrderStatus, Product, ProductStatus, now_utc
)
from keyshop.pricing import PricingProvider
from keyshop.services.allocation import available_count, insufficient_inventory
from keyshop.services.keys import decrypt_for_delivery, sold_keys
from keyshop.vault import KeyVault

logger = structlog.get_logger(__name__)

ORDER_NO_ATTEMPTS = 5


@dataclass
class OrderCreated:
    order: Order
    payment: PaymentSession


def generate_order_no(now: Optional[datetime] = None) -> str:
    now = now or now_utc()
    return f"ORD{now:%Y%m%d}{100000 + secrets.randbelow(900000)}"


def lock_order(db: Session, order_no: str) -> Order:
    """Load an order by number holding its row lock for the rest of the transaction."""
    order = db.execute(
        select(Order)
        .where(Order.order_no == order_no)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise ShopError(ErrorKind.NOT_FOUND, f"Order {order_no} not found")
    return order


def transition(db: Session, order: Order, expected: OrderStatus, target: OrderStatus, **values) -> bool:
    """Compare-and-set on the order status. False when someone else moved it first."""
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == expected)
        .values(status=target, updated_at=now_utc(), **values)
    )
    if result.rowcount != 1:
        return False
    db.refresh(order)
    return True


def create_order(
    db: Session,
    gateways: GatewayRegistry,
    pricing: PricingProvider,
    product_id: int,
    email: str,
    payment_method: str,
    client_ip: Optional[str],
    quantity: int = 1,
) -> OrderCreated:
    """
    Order intake.

    Everything that can reject the request (payment method, product, stock
    precheck, quantity) is checked before anything is written. The stock
    check here is only a hint; allocation is where scarcity is enforced.
    """
    if not gateways.is_available(payment_method):
        raise ShopError(
            ErrorKind.VALIDATION,
            f"Payment method {payment_method} is not available",
            payment_method=payment_method,
        )
    if quantity < 1 or quantity > settings.max_quantity_per_order:
        raise ShopError(
            ErrorKind.VALIDATION,
            f"Quantity must be between 1 and {settings.max_quantity_per_order}",
            quantity=quantity,
        )

    product = db.get(Product, product_id)
    if product is None:
        raise ShopError(ErrorKind.NOT_FOUND, f"Product {product_id} not found")
    if product.status != ProductStatus.ACTIVE:
        raise ShopError(ErrorKind.VALIDATION, "Product is not available", product_id=product_id)

    stock = available_count(db, product_id)
    if stock < quantity:
        raise insufficient_inventory(product_id, quantity, stock, "intake")

    quote = pricing.quote(db, product_id, client_ip)
    total = quote.amount * quantity
    product_name = product.name

    order = None
    for _ in range(ORDER_NO_ATTEMPTS):
        candidate = Order(
            order_no=generate_order_no(),
            email=email,
            total_amount=total,
            currency=quote.currency,
            country_code=quote.country_code,
            status=OrderStatus.PENDING,
            payment_method=payment_method,
            customer_ip=client_ip,
            items=[
                OrderItem(
                    product_id=product_id,
                    product_name=product_name,
                    quantity=quantity,
                    unit_price=quote.amount,
                    subtotal=total,
                )
            ],
        )
        try:
            with atomic(db):
                db.add(candidate)
            order = candidate
            break
        except IntegrityError:
            logger.warning("order_no_collision", order_no=candidate.order_no)
    if order is None:
        raise ShopError(ErrorKind.VALIDATION, "Could not allocate a unique order number, retry")

    orders_created_total.labels(payment_method).inc()
    logger.info(
        "order_created",
        order_no=order.order_no,
        product_id=product_id,
        quantity=quantity,
        amount=str(total),
        currency=quote.currency,
    )

    try:
        payment = gateways.create_payment(payment_method, order.order_no, total, product_name)
    except ShopError:
        # order stays pending: a late callback may still complete it, otherwise
        # it surfaces in the stuck-order list
        logger.error("payment_session_failed", order_no=order.order_no, payment_method=payment_method)
        raise

    return OrderCreated(order=order, payment=payment)


def cancel_order(db: Session, order_no: str, reason: str = "manual") -> Order:
    with atomic(db):
        order = lock_order(db, order_no)
        if order.status != OrderStatus.PENDING:
            raise ShopError(
                ErrorKind.VALIDATION,
                f"Cannot cancel order with status: {order.status.value}",
                order_no=order_no,
            )
        if not transition(db, order, OrderStatus.PENDING, OrderStatus.CANCELLED):
            raise ShopError(ErrorKind.VALIDATION, "Order changed while cancelling", order_no=order_no)

    orders_cancelled_total.labels(reason).inc()
    logger.info("order_cancelled", order_no=order_no, reason=reason)
    return order


def get_order(db: Session, order_no: str) -> Order:
    order = db.execute(select(Order).where(Order.order_no == order_no)).scalar_one_or_none()
    if order is None:
        raise ShopError(ErrorKind.NOT_FOUND, f"Order {order_no} not found")
    return order


def same_email(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


def buyer_order(db: Session, order_no: str, email: str) -> Order:
    order = get_order(db, order_no)
    # a wrong email looks exactly like a missing order
    if not same_email(order.email, email):
        raise ShopError(ErrorKind.NOT_FOUND, f"Order {order_no} not found")
    return order


def cancel_order_for_buyer(db: Session, order_no: str, email: str) -> Order:
    buyer_order(db, order_no, email)
    return cancel_order(db, order_no, reason="buyer")


def orders_by_email(db: Session, email: str, page: int = 1, page_size: int = 10) -> Dict:
    """A buyer's orders, newest first, one page at a time. No key ids."""
    page = max(page, 1)
    page_size = min(max(page_size, 1), 50)
    match = func.lower(Order.email) == email.strip().lower()
    total = db.execute(select(func.count(Order.id)).where(match)).scalar_one()
    orders = db.execute(
        select(Order)
        .where(match)
        .order_by(Order.created_at.desc(), Order.order_no.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).scalars().all()
    return {
        "orders": list(orders),
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": (total + page_size - 1) // page_size,
        },
    }


def order_detail(db: Session, order_no: str, email: Optional[str] = None) -> Dict:
    """Order with items and the ids of its sold keys; never key material."""
    order = get_order(db, order_no) if email is None else buyer_order(db, order_no, email)
    return _detail(db, order)


def _detail(db: Session, order: Order) -> Dict:
    return {
        "id": order.id,
        "order_no": order.order_no,
        "email": order.email,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "country_code": order.country_code,
        "status": order.status,
        "payment_method": order.payment_method,
        "transaction_id": order.transaction_id,
        "paid_at": order.paid_at,
        "refund_amount": order.refund_amount,
        "refunded_at": order.refunded_at,
        "created_at": order.created_at,
        "items": [
            {
                "product_id": i.product_id,
                "product_name": i.product_name,
                "quantity": i.quantity,
                "unit_price": i.unit_price,
                "subtotal": i.subtotal,
            }
            for i in order.items
        ],
        "license_key_ids": [k.id for k in sold_keys(db, order.id)],
    }


def order_summary(order: Order) -> Dict:
    return {
        "order_no": order.order_no,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "items": [
            {"product_name": i.product_name, "quantity": i.quantity} for i in order.items
        ],
    }


def reveal_order_keys(db: Session, vault: KeyVault, order_no: str, email: str) -> List[Dict]:
    order = buyer_order(db, order_no, email)
    if order.status not in FULFILLED_STATUSES:
        raise ShopError(
            ErrorKind.VALIDATION,
            f"Keys are not available for order with status: {order.status.value}",
            order_no=order_no,
        )
    keys = decrypt_for_delivery(vault, sold_keys(db, order.id))
    logger.info("license_keys_delivered", order_no=order_no, key_count=len(keys), channel="api")
    return keys


def list_stuck_orders(db: Session, older_than: Optional[timedelta] = None) -> List[Order]:
    """Pending orders past the configured age; resolved by an operator, never auto-allocated."""
    older_than = older_than or timedelta(minutes=settings.stuck_order_age_minutes)
    cutoff = now_utc() - older_than
    return list(
        db.execute(
            select(Order)
            .where(Order.status == OrderStatus.PENDING, Order.created_at < cutoff)
            .order_by(Order.created_at)
        ).scalars()
    )
