# keyshop/services/inventory.py
"""
Inventory alerting.

Low stock is announced at most once per cooldown window per product. The
cooldown flag lives in Redis (``inventory:alert:{product_id}`` with a TTL)
and is claimed with ``SET NX EX`` before sending, so two allocations racing
past the threshold produce one alert, not two.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from keyshop.metrics import low_stock_alerts_total
from keyshop.models import KeyStatus, LicenseKey, Product, ProductStatus
from keyshop.notifications import NotificationChannel

logger = structlog.get_logger(__name__)

COOLDOWN_KEY = "inventory:alert:{product_id}"


@dataclass
class StockLevel:
    product_id: int
    product_name: str
    stock: int
    threshold: int

    @property
    def is_low(self) -> bool:
        return self.stock <= self.threshold

    @property
    def label(self) -> str:
        if self.stock == 0:
            return "OUT_OF_STOCK"
        return "LOW_STOCK" if self.is_low else "HEALTHY"

    def as_dict(self) -> Dict:
        return {
            "id": self.product_id,
            "name": self.product_name,
            "stock": self.stock,
            "threshold": self.threshold,
            "status": self.label,
        }


@dataclass
class CheckSummary:
    checked: int = 0
    low_stock: int = 0
    alerts_sent: int = 0
    products: List[Dict] = field(default_factory=list)


class InventoryAlerter:
    def __init__(
        self,
        store,
        channel: NotificationChannel,
        threshold: int = 10,
        cooldown_seconds: int = 86400,
    ):
        # store: a redis.Redis client (set/exists/delete with TTL)
        self.store = store
        self.channel = channel
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds

    def _key(self, product_id: int) -> str:
        return COOLDOWN_KEY.format(product_id=product_id)

    def stock_levels(self, db: Session, product_ids: Optional[Iterable[int]] = None) -> List[StockLevel]:
        available = func.count(case((LicenseKey.status == KeyStatus.AVAILABLE, LicenseKey.id)))
        stmt = (
            select(Product.id, Product.name, available)
            .outerjoin(LicenseKey, LicenseKey.product_id == Product.id)
            .where(Product.status == ProductStatus.ACTIVE)
            .group_by(Product.id, Product.name)
            .order_by(Product.id)
        )
        if product_ids is not None:
            stmt = stmt.where(Product.id.in_(list(product_ids)))
        return [
            StockLevel(pid, name, int(count or 0), self.threshold)
            for pid, name, count in db.execute(stmt).all()
        ]

    def in_cooldown(self, product_id: int) -> bool:
        return bool(self.store.exists(self._key(product_id)))

    def _send(self, level: StockLevel) -> bool:
        title = f"Low stock: {level.product_name}"
        body = (
            f"Product {level.product_name} (id {level.product_id}) has "
            f"{level.stock} license keys left (threshold {level.threshold})."
        )
        try:
            return bool(self.channel.send(title, body))
        except Exception:
            logger.exception("low_stock_alert_send_failed", product_id=level.product_id)
            return False

    def _maybe_alert(self, level: StockLevel) -> bool:
        key = self._key(level.product_id)
        if not self.store.set(key, "1", nx=True, ex=self.cooldown_seconds):
            low_stock_alerts_total.labels("suppressed").inc()
            logger.debug("low_stock_alert_suppressed", product_id=level.product_id, stock=level.stock)
            return False

        if self._send(level):
            low_stock_alerts_total.labels("sent").inc()
            logger.warning(
                "low_stock_alert_sent",
                product_id=level.product_id,
                stock=level.stock,
                threshold=level.threshold,
            )
            return True

        # give the next allocation a chance to alert
        self.store.delete(key)
        low_stock_alerts_total.labels("failed").inc()
        return False

    def after_allocation(self, db: Session, product_ids: Iterable[int]) -> int:
        """Post-allocation hook. Returns the number of alerts sent."""
        sent = 0
        for level in self.stock_levels(db, product_ids):
            if level.is_low and self._maybe_alert(level):
                sent += 1
        return sent

    def check_all(self, db: Session) -> CheckSummary:
        """Periodic scan of active products, cooldown honoured."""
        summary = CheckSummary()
        for level in self.stock_levels(db):
            summary.checked += 1
            if not level.is_low:
                continue
            summary.low_stock += 1
            summary.products.append(level.as_dict())
            if self._maybe_alert(level):
                summary.alerts_sent += 1
        logger.info(
            "inventory_check_finished",
            checked=summary.checked,
            low_stock=summary.low_stock,
            alerts_sent=summary.alerts_sent,
        )
        return summary

    def force_recheck(self, db: Session, product_id: Optional[int] = None) -> CheckSummary:
        """
        Admin action: alert every low-stock product now, ignoring the cooldown.

        The cooldown is re-armed after each successful send so the regular
        hook does not repeat the alert straight away.
        """
        summary = CheckSummary()
        ids = [product_id] if product_id is not None else None
        for level in self.stock_levels(db, ids):
            summary.checked += 1
            if not level.is_low:
                continue
            summary.low_stock += 1
            summary.products.append(level.as_dict())
            if self._send(level):
                self.store.set(self._key(level.product_id), "1", ex=self.cooldown_seconds)
                low_stock_alerts_total.labels("forced").inc()
                summary.alerts_sent += 1
        logger.info(
            "inventory_forced_recheck",
            product_id=product_id,
            low_stock=summary.low_stock,
            alerts_sent=summary.alerts_sent,
        )
        return summary

    def reset_cooldown(self, product_id: int) -> bool:
        removed = bool(self.store.delete(self._key(product_id)))
        logger.info("low_stock_cooldown_reset", product_id=product_id, was_active=removed)
        return removed

    def stock_report(self, db: Session) -> Dict:
        levels = self.stock_levels(db)
        return {
            "total_products": len(levels),
            "low_stock_products": sum(1 for lv in levels if lv.is_low),
            "out_of_stock_products": sum(1 for lv in levels if lv.stock == 0),
            "healthy_stock_products": sum(1 for lv in levels if not lv.is_low),
            "alert_threshold": self.threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "products": [
                dict(lv.as_dict(), cooldown_active=self.in_cooldown(lv.product_id)) for lv in levels
            ],
        }


class InventoryMonitor:
    """
    Periodic ``check_all`` as a supervised asyncio task.

    Owned by the application lifespan: ``start()`` on startup, ``await
    stop()`` on shutdown. A failing tick is logged and the loop carries on.
    """

    def __init__(
        self,
        alerter: InventoryAlerter,
        session_factory: Callable[[], Session],
        interval_seconds: float = 3600,
    ):
        self.alerter = alerter
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> Dict:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "threshold": self.alerter.threshold,
            "cooldown_seconds": self.alerter.cooldown_seconds,
        }

    def _check_once(self) -> CheckSummary:
        with self.session_factory() as db:
            return self.alerter.check_all(db)

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self._check_once)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("inventory_check_failed")
            self.ticks += 1
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            logger.warning("inventory_monitor_already_running")
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="inventory-monitor")
        logger.info("inventory_monitor_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("inventory_monitor_stopped")
