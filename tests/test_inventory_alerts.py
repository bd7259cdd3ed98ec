from keyshop.models import ProductStatus
from keyshop.pricing import TablePricing
from keyshop.services.callbacks import handle_payment_callback
from keyshop.services.inventory import COOLDOWN_KEY, InventoryAlerter
from keyshop.services.orders import create_order

DAY = 86400


def _buy(db, gateways, sandbox, alerter, product_id):
    order = create_order(
        db, gateways, TablePricing(), product_id=product_id, email="b@example.com",
        payment_method="sandbox", client_ip=None,
    ).order
    params = sandbox.notification(order.order_no, order.total_amount)
    return handle_payment_callback(db, sandbox.parse_notification(params), alerter=alerter)


def test_no_alert_above_threshold(db, gateways, sandbox, alerter, channel, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 15)
    _buy(db, gateways, sandbox, alerter, pid)
    assert channel.sent == []


def test_cooldown_suppresses_repeat_alerts_until_expiry(
    db, gateways, sandbox, alerter, channel, clock, make_product, add_keys
):
    pid = make_product(name="Office 2021")
    add_keys(pid, 26)

    # 26 -> 11 available, still healthy
    for _ in range(15):
        _buy(db, gateways, sandbox, alerter, pid)
    assert channel.sent == []

    # 11 -> 10 crosses the threshold: first alert
    _buy(db, gateways, sandbox, alerter, pid)
    assert len(channel.sent) == 1
    assert "Office 2021" in channel.sent[0][0]

    # ten more qualifying allocations inside the window: silent
    for _ in range(10):
        _buy(db, gateways, sandbox, alerter, pid)
    assert len(channel.sent) == 1
    assert alerter.in_cooldown(pid)

    add_keys(pid, 1)
    clock.advance(DAY + 1)
    assert not alerter.in_cooldown(pid)
    _buy(db, gateways, sandbox, alerter, pid)
    assert len(channel.sent) == 2


def test_reset_cooldown_re_enables_alert(db, alerter, channel, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 3)

    assert alerter.after_allocation(db, [pid]) == 1
    assert alerter.after_allocation(db, [pid]) == 0
    assert alerter.reset_cooldown(pid) is True
    assert alerter.reset_cooldown(pid) is False
    assert alerter.after_allocation(db, [pid]) == 1
    assert len(channel.sent) == 2


def test_failed_send_releases_cooldown(db, alerter, channel, store, make_product, add_keys):
    pid = make_product()
    add_keys(pid, 3)
    channel.fail = True

    assert alerter.after_allocation(db, [pid]) == 0
    assert not store.exists(COOLDOWN_KEY.format(product_id=pid))

    channel.fail = False
    assert alerter.after_allocation(db, [pid]) == 1


def test_channel_exception_is_contained(db, store, make_product, add_keys):
    class Exploding:
        def send(self, title, body):
            raise OSError("network unreachable")

    pid = make_product()
    add_keys(pid, 1)
    alerter = InventoryAlerter(store, Exploding(), threshold=10)

    assert alerter.after_allocation(db, [pid]) == 0
    assert not alerter.in_cooldown(pid)


def test_force_recheck_bypasses_and_rearms_cooldown(db, alerter, channel, make_product, add_keys):
    low = make_product(name="Low")
    healthy = make_product(name="Healthy")
    add_keys(low, 2)
    add_keys(healthy, 20)
    alerter.after_allocation(db, [low])
    assert len(channel.sent) == 1

    summary = alerter.force_recheck(db)

    assert summary.checked == 2
    assert summary.low_stock == 1
    assert summary.alerts_sent == 1
    assert len(channel.sent) == 2
    assert alerter.in_cooldown(low)
    # the regular hook stays quiet afterwards
    assert alerter.after_allocation(db, [low]) == 0


def test_check_all_and_stock_report(db, alerter, channel, make_product, add_keys):
    empty = make_product(name="Empty")
    low = make_product(name="Low")
    healthy = make_product(name="Healthy")
    retired = make_product(name="Retired", status=ProductStatus.INACTIVE)
    add_keys(low, 4)
    add_keys(healthy, 30)
    add_keys(retired, 1)

    summary = alerter.check_all(db)
    assert (summary.checked, summary.low_stock, summary.alerts_sent) == (3, 2, 2)
    assert alerter.check_all(db).alerts_sent == 0

    report = alerter.stock_report(db)
    assert report["total_products"] == 3
    assert report["out_of_stock_products"] == 1
    assert report["low_stock_products"] == 2
    assert report["healthy_stock_products"] == 1
    by_id = {p["id"]: p for p in report["products"]}
    assert by_id[empty]["status"] == "OUT_OF_STOCK"
    assert by_id[low]["status"] == "LOW_STOCK"
    assert by_id[healthy]["status"] == "HEALTHY"
    assert by_id[low]["cooldown_active"] is True
    assert retired not in by_id
