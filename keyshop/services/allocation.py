# keyshop/services/allocation.py
"""
Key Allocation Engine.

``allocate`` runs inside the caller's transaction (the same one that moves
the order out of ``pending``) and either claims every key the order needs or
raises, so the caller's rollback leaves no partial allocation behind.

Two guards stop a key from being sold twice:
  * candidates are selected ``FOR UPDATE SKIP LOCKED`` (row locks on
    Postgres; concurrent buyers step over each other's rows), and
  * the claim is a conditional ``UPDATE ... WHERE status = 'available'``
    whose row count is checked. A short count means another transaction won
    some of the rows; we select replacements and try again.
"""
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from keyshop.config import settings
from keyshop.errors import ErrorKind, ShopError
from keyshop.metrics import (
    allocation_retries_total, insufficient_inventory_total, keys_allocated_total
)
from keyshop.models import KeyStatus, LicenseKey, Order, now_utc

logger = structlog.get_logger(__name__)


def available_count(db: Session, product_id: int) -> int:
    return db.execute(
        select(func.count(LicenseKey.id)).where(
            LicenseKey.product_id == product_id,
            LicenseKey.status == KeyStatus.AVAILABLE,
        )
    ).scalar_one()


def insufficient_inventory(product_id: int, required: int, available: int, stage: str) -> ShopError:
    insufficient_inventory_total.labels(stage).inc()
    return ShopError(
        ErrorKind.INSUFFICIENT_INVENTORY,
        f"Insufficient license keys for product {product_id}. "
        f"Required: {required}, Available: {available}",
        product_id=product_id,
        required=required,
        available=available,
    )


def _select_candidates(db: Session, product_id: int, limit: int) -> List[int]:
    """Oldest available keys first; id breaks created_at ties."""
    stmt = (
        select(LicenseKey.id)
        .where(
            LicenseKey.product_id == product_id,
            LicenseKey.status == KeyStatus.AVAILABLE,
        )
        .order_by(LicenseKey.created_at.asc(), LicenseKey.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(db.execute(stmt).scalars())


def _claim(db: Session, order_id, key_ids: List[int], sold_at: datetime) -> int:
    result = db.execute(
        update(LicenseKey)
        .where(
            LicenseKey.id.in_(key_ids),
            LicenseKey.status == KeyStatus.AVAILABLE,
        )
        .values(status=KeyStatus.SOLD, order_id=order_id, sold_at=sold_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _owned_keys(db: Session, order_id, product_id: int) -> List[int]:
    return list(
        db.execute(
            select(LicenseKey.id)
            .where(
                LicenseKey.order_id == order_id,
                LicenseKey.product_id == product_id,
                LicenseKey.status == KeyStatus.SOLD,
            )
            .order_by(LicenseKey.id)
        ).scalars()
    )


def allocate_product(
    db: Session,
    order_id,
    product_id: int,
    quantity: int,
    sold_at: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> List[int]:
    sold_at = sold_at or now_utc()
    max_attempts = max_attempts or settings.allocation_max_attempts
    claimed = 0

    for attempt in range(1, max_attempts + 1):
        needed = quantity - claimed
        candidates = _select_candidates(db, product_id, needed)
        if len(candidates) < needed:
            raise insufficient_inventory(product_id, quantity, claimed + len(candidates), "allocation")

        won = _claim(db, order_id, candidates, sold_at)
        claimed += won
        if claimed == quantity:
            break

        allocation_retries_total.inc()
        logger.warning(
            "allocation_claim_contended",
            product_id=product_id,
            attempt=attempt,
            wanted=needed,
            won=won,
        )
    else:
        # kept losing races; let the caller's rollback release what we hold
        raise insufficient_inventory(product_id, quantity, claimed, "allocation")

    key_ids = _owned_keys(db, order_id, product_id)
    if len(key_ids) != quantity:
        raise ShopError(
            ErrorKind.INSUFFICIENT_INVENTORY,
            f"Allocation for product {product_id} ended with {len(key_ids)} of {quantity} keys",
            product_id=product_id,
        )
    keys_allocated_total.inc(quantity)
    return key_ids


def allocate(db: Session, order: Order, max_attempts: Optional[int] = None) -> Dict[int, List[int]]:
    """Claim keys for every item of ``order``. Returns ``{product_id: [key_id, ...]}``."""
    wanted: "OrderedDict[int, int]" = OrderedDict()
    for item in sorted(order.items, key=lambda i: i.product_id):
        wanted[item.product_id] = wanted.get(item.product_id, 0) + item.quantity

    sold_at = now_utc()
    allocated: Dict[int, List[int]] = {}
    for product_id, quantity in wanted.items():
        allocated[product_id] = allocate_product(
            db, order.id, product_id, quantity, sold_at=sold_at, max_attempts=max_attempts
        )

    logger.info(
        "keys_allocated",
        order_no=order.order_no,
        products={pid: len(ids) for pid, ids in allocated.items()},
    )
    return allocated
