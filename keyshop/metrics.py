# keyshop/metrics.py
from prometheus_client import Counter, Gauge, Histogram, make_asgi_app

# Orders
orders_created_total = Counter("orders_created_total", "Pending orders created", ["payment_method"])
orders_cancelled_total = Counter("orders_cancelled_total", "Orders cancelled", ["reason"])

callbacks_total = Counter(
    "payment_callbacks_total",
    "Payment notifications handled, by outcome",
    ["outcome"],  # completed | cancelled | already_processed | rejected
)
amount_mismatches_total = Counter(
    "payment_amount_mismatch_total",
    "Notifications whose amount did not match the order total",
)

# Allocation
keys_allocated_total = Counter("license_keys_allocated_total", "License keys flipped to sold")
allocation_retries_total = Counter(
    "allocation_retries_total",
    "Optimistic claims that lost rows to a concurrent buyer and re-selected",
)
insufficient_inventory_total = Counter(
    "insufficient_inventory_total",
    "Allocations or intake prechecks rejected for lack of stock",
    ["stage"],  # intake | allocation
)

# Refunds
refunds_total = Counter("refunds_total", "Successful refunds")
keys_released_total = Counter("license_keys_released_total", "Sold keys returned to the pool by refunds")
refund_errors = Counter("refund_errors_total", "Refund errors", ["type"])

# Inventory alerting
low_stock_alerts_total = Counter(
    "low_stock_alerts_total",
    "Low-stock alert decisions",
    ["result"],  # sent | suppressed | failed | forced
)

# Admission control
admission_rejected_total = Counter("admission_rejected_total", "Requests rejected as overloaded")
requests_in_flight = Gauge("requests_in_flight", "Requests currently admitted")

# Latency
callback_latency = Histogram("payment_callback_latency_seconds", "Payment callback latency in seconds")
refund_latency = Histogram("refund_latency_seconds", "Refund latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
