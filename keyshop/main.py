from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import parse_qsl

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from keyshop.admission import AdmissionControlMiddleware
from keyshop.config import settings
from keyshop.db import SessionLocal, engine, ping_db
from keyshop.deps import Services, build_services, client_ip, get_services, require_admin
from keyshop.errors import ErrorKind, ShopError
from keyshop.logging import setup_logging
from keyshop.metrics import metrics_asgi_app
from keyshop.models import Base
from keyshop.schemas import (
    BuyerCancelRequest, CallbackOut, DeliveredKey, KeyImportOut, KeyImportRequest,
    KeyRevokeRequest, LicenseKeyOut, OrderCreate, OrderCreatedOut, OrderDetail, OrderOut,
    OrderPage, PaymentSessionOut, RecheckOut, ReconcileOut, RefundOut, RefundRequest,
    SendCodeRequest, VerifyCodeRequest,
)
from keyshop.services.callbacks import handle_payment_callback, send_order_confirmation
from keyshop.services.inventory import InventoryMonitor
from keyshop.services.keys import import_keys, revoke_key
from keyshop.services.orders import (
    cancel_order, cancel_order_for_buyer, create_order, list_stuck_orders, order_detail,
    orders_by_email, reveal_order_keys,
)
from keyshop.services.refunds import reconcile_refunds, refund_order
from keyshop.services.verification import send_verification_code

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)

    # tests pre-seed app.state.services with their own doubles
    services = getattr(app.state, "services", None) or build_services(settings)
    app.state.services = services

    monitor = InventoryMonitor(services.alerter, SessionLocal, settings.inventory_check_interval_seconds)
    app.state.monitor = monitor
    if settings.inventory_monitor_enabled:
        monitor.start()
    yield
    await monitor.stop()


app = FastAPI(title="keyshop", lifespan=lifespan)
app.add_middleware(AdmissionControlMiddleware, max_in_flight=settings.max_in_flight_requests)
app.mount("/metrics", metrics_asgi_app)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    log = logger.error if exc.kind in (ErrorKind.GATEWAY, ErrorKind.AMOUNT_MISMATCH) else logger.info
    log("request_failed", path=request.url.path, kind=exc.kind.value, error=exc.message)
    headers = {"Retry-After": "5"} if exc.retriable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)


@app.get("/")
def root():
    return {"service": "keyshop", "docs": "/docs"}


@app.get("/healthz")
def healthz():
    try:
        ping_db()
        return {"ok": True, "db": "up"}
    except Exception:
        return {"ok": False, "db": "down"}


# --- buyer surface -----------------------------------------------------------

@app.post("/orders", response_model=OrderCreatedOut, tags=["orders"])
def post_order(payload: OrderCreate, request: Request, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        created = create_order(
            db,
            services.gateways,
            services.pricing,
            product_id=payload.product_id,
            email=payload.email,
            payment_method=payload.payment_method,
            client_ip=client_ip(request),
            quantity=payload.quantity,
        )
        return OrderCreatedOut(
            order=OrderOut.model_validate(created.order),
            payment=PaymentSessionOut(**vars(created.payment)),
        )


@app.post("/orders/send-code", tags=["orders"])
def post_send_code(payload: SendCodeRequest, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        send_verification_code(db, services.codes, services.mailer, payload.email, payload.order_no)
    return {"success": True, "message": "Verification code sent to your email"}


@app.post("/orders/verify-code", tags=["orders"])
def post_verify_code(payload: VerifyCodeRequest, services: Services = Depends(get_services)):
    return {"valid": services.codes.verify(payload.email, payload.code)}


@app.get("/orders/email/{email}", response_model=OrderPage, tags=["orders"])
def get_orders_by_email(
    email: str,
    code: str = Query(...),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=50),
    services: Services = Depends(get_services),
):
    services.codes.require(email, code)
    with SessionLocal() as db:
        return OrderPage.model_validate(orders_by_email(db, email, page, page_size), from_attributes=True)


@app.get("/orders/{order_no}", response_model=OrderDetail, tags=["orders"])
def get_order(
    order_no: str,
    email: str = Query(...),
    code: str = Query(...),
    services: Services = Depends(get_services),
):
    services.codes.require(email, code)
    with SessionLocal() as db:
        return OrderDetail.model_validate(order_detail(db, order_no, email))


@app.get("/orders/{order_no}/keys", response_model=List[DeliveredKey], tags=["orders"])
def get_order_keys(
    order_no: str,
    email: str = Query(...),
    code: str = Query(...),
    services: Services = Depends(get_services),
):
    services.codes.require(email, code)
    with SessionLocal() as db:
        return reveal_order_keys(db, services.vault, order_no, email)


@app.post("/orders/{order_no}/cancel", response_model=OrderOut, tags=["orders"])
def post_buyer_cancel(order_no: str, payload: BuyerCancelRequest, services: Services = Depends(get_services)):
    services.codes.require(payload.email, payload.code)
    with SessionLocal() as db:
        return OrderOut.model_validate(cancel_order_for_buyer(db, order_no, payload.email))


@app.post("/payments/{method}/notify", response_model=CallbackOut, tags=["payments"])
async def payment_notify(
    method: str,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    try:
        if request.headers.get("content-type", "").startswith("application/json"):
            raw = await request.json()
        else:
            raw = dict(parse_qsl((await request.body()).decode("utf-8")))
    except ValueError:
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors
        raise ShopError(ErrorKind.VALIDATION, "Malformed notification")
    if not isinstance(raw, dict):
        raise ShopError(ErrorKind.VALIDATION, "Malformed notification")
    raw = {str(k): str(v) for k, v in raw.items()}

    gateway = services.gateways.get(method.lower())
    if not gateway.verify_callback(raw):
        logger.error("payment_callback_bad_signature", payment_method=method, order_no=raw.get("order_no"))
        raise ShopError(ErrorKind.VALIDATION, "Invalid signature")
    notice = gateway.parse_notification(raw)
    logger.info("payment_callback_received", payment_method=method, order_no=notice.order_no, status=notice.status)

    def _process():
        with SessionLocal() as db:
            return handle_payment_callback(db, notice, alerter=services.alerter, notifier=services.notifier)

    result = await run_in_threadpool(_process)
    if result.completed:
        background_tasks.add_task(
            send_order_confirmation, SessionLocal, services.vault, services.mailer, result.order_no
        )
    return CallbackOut(
        success=result.success,
        message=result.message,
        order_no=result.order_no,
        status=result.status,
        license_key_ids=result.key_ids,
    )


# --- admin surface -------------------------------------------------------------

@app.post("/admin/orders/{order_no}/refund", response_model=RefundOut, tags=["admin"],
          dependencies=[Depends(require_admin)])
def post_refund(order_no: str, payload: Optional[RefundRequest] = None,
                services: Services = Depends(get_services)):
    payload = payload or RefundRequest()
    with SessionLocal() as db:
        result = refund_order(db, services.gateways, order_no, payload.amount, payload.reason)
        return RefundOut(
            success=result.success,
            already_processed=result.already_processed,
            refund_amount=result.refund_amount,
            released_key_ids=result.released_key_ids,
            order=OrderOut.model_validate(result.order),
        )


@app.post("/admin/orders/{order_no}/cancel", response_model=OrderOut, tags=["admin"],
          dependencies=[Depends(require_admin)])
def post_cancel(order_no: str):
    with SessionLocal() as db:
        return OrderOut.model_validate(cancel_order(db, order_no))


@app.get("/admin/orders/stuck", response_model=List[OrderOut], tags=["admin"],
         dependencies=[Depends(require_admin)])
def get_stuck_orders():
    with SessionLocal() as db:
        return [OrderOut.model_validate(o) for o in list_stuck_orders(db)]


@app.post("/admin/refunds/reconcile", response_model=ReconcileOut, tags=["admin"],
          dependencies=[Depends(require_admin)])
def post_reconcile(services: Services = Depends(get_services)):
    with SessionLocal() as db:
        return ReconcileOut(**vars(reconcile_refunds(db, services.gateways)))


@app.post("/admin/license-keys/import", response_model=KeyImportOut, tags=["admin"],
          dependencies=[Depends(require_admin)])
def post_import_keys(payload: KeyImportRequest, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        return KeyImportOut(**vars(import_keys(db, services.vault, payload.product_id, payload.keys)))


@app.post("/admin/license-keys/{key_id}/revoke", response_model=LicenseKeyOut, tags=["admin"],
          dependencies=[Depends(require_admin)])
def post_revoke_key(key_id: int, payload: Optional[KeyRevokeRequest] = None):
    reason = payload.reason if payload else None
    with SessionLocal() as db:
        return LicenseKeyOut.model_validate(revoke_key(db, key_id, reason))


@app.get("/admin/inventory", tags=["admin"], dependencies=[Depends(require_admin)])
def get_inventory(request: Request, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        report = services.alerter.stock_report(db)
    report["monitor"] = request.app.state.monitor.status()
    return report


@app.post("/admin/inventory/recheck", response_model=RecheckOut, tags=["admin"],
          dependencies=[Depends(require_admin)])
def post_recheck(product_id: Optional[int] = None, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        return RecheckOut(**vars(services.alerter.force_recheck(db, product_id)))


@app.delete("/admin/inventory/{product_id}/cooldown", tags=["admin"],
            dependencies=[Depends(require_admin)])
def delete_cooldown(product_id: int, services: Services = Depends(get_services)):
    return {"product_id": product_id, "reset": services.alerter.reset_cooldown(product_id)}
