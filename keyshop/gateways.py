# keyshop/gateways.py
"""
Payment gateway collaborators.

The core only sees the ``PaymentGateway`` protocol; signature schemes, XML
and vendor payloads stay inside the adapters. ``GatewayRegistry`` picks the
adapter for a payment method and owns the retry policy: status queries and
refunds are retried with exponential backoff, payment creation is not.
"""
import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional, Protocol

import httpx
import structlog
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from keyshop.errors import ErrorKind, ShopError
from keyshop.schemas import PaymentNotice

logger = structlog.get_logger(__name__)

SUCCESS = "success"


@dataclass
class PaymentSession:
    method: str
    redirect_url: Optional[str] = None
    qr_url: Optional[str] = None


class PaymentGateway(Protocol):
    method: str

    def create_payment(self, order_no: str, amount: Decimal, subject: str) -> PaymentSession: ...

    def verify_callback(self, raw_params: Mapping[str, str]) -> bool: ...

    def parse_notification(self, raw_params: Mapping[str, str]) -> PaymentNotice: ...

    def query_status(self, order_no: str) -> str: ...

    def refund(self, order_no: str, amount: Decimal) -> bool: ...


def gateway_error(message: str, transient: bool, **details) -> ShopError:
    return ShopError(ErrorKind.GATEWAY, message, transient=transient, **details)


def _is_transient(exc: BaseException) -> bool:
    return (
        isinstance(exc, ShopError)
        and exc.kind is ErrorKind.GATEWAY
        and bool(exc.details.get("transient"))
    )


def sign_params(params: Mapping[str, str], secret: str) -> str:
    """HMAC-SHA256 over ``k=v`` pairs sorted by key, ``sign`` excluded."""
    content = "&".join(
        f"{k}={params[k]}" for k in sorted(params) if k != "sign" and params[k] not in (None, "")
    )
    return hmac.new(secret.encode("utf-8"), content.encode("utf-8"), hashlib.sha256).hexdigest()


class SignedNotifications:
    """Shared callback handling for adapters that post flat, HMAC-signed params."""

    secret: str

    def verify_callback(self, raw_params: Mapping[str, str]) -> bool:
        sign = raw_params.get("sign")
        if not sign:
            return False
        return hmac.compare_digest(sign, sign_params(raw_params, self.secret))

    def parse_notification(self, raw_params: Mapping[str, str]) -> PaymentNotice:
        try:
            return PaymentNotice(
                order_no=raw_params["order_no"],
                transaction_id=raw_params.get("transaction_id") or None,
                status=raw_params["status"],
                amount=raw_params["amount"],
            )
        except (KeyError, ValueError) as e:
            raise ShopError(ErrorKind.VALIDATION, f"Malformed payment notification: {e}")


class SandboxGateway(SignedNotifications):
    """
    Offline gateway for development and tests.

    Keeps its own record of payments and refunds so that ``query_status`` and
    the refund reconciliation job have something real to look at.
    """

    def __init__(self, secret: str, method: str = "sandbox"):
        self.method = method
        self.secret = secret
        self.payments: Dict[str, Dict[str, object]] = {}

    def create_payment(self, order_no: str, amount: Decimal, subject: str) -> PaymentSession:
        self.payments[order_no] = {"amount": Decimal(amount), "status": "pending", "subject": subject}
        return PaymentSession(
            method=self.method,
            redirect_url=f"https://sandbox.invalid/pay/{order_no}",
        )

    def notification(
        self,
        order_no: str,
        amount: Decimal,
        status: str = SUCCESS,
        transaction_id: Optional[str] = None,
    ) -> Dict[str, str]:
        """Build the signed params the sandbox would post to the notify URL."""
        params = {
            "order_no": order_no,
            "transaction_id": transaction_id or f"SBX-{order_no}",
            "status": status,
            "amount": str(amount),
        }
        params["sign"] = sign_params(params, self.secret)
        if order_no in self.payments and status == SUCCESS:
            self.payments[order_no]["status"] = "paid"
        return params

    def query_status(self, order_no: str) -> str:
        payment = self.payments.get(order_no)
        return str(payment["status"]) if payment else "unknown"

    def refund(self, order_no: str, amount: Decimal) -> bool:
        payment = self.payments.get(order_no)
        if payment is None or payment["status"] != "paid":
            return False
        payment["status"] = "refunded"
        payment["refunded_amount"] = Decimal(amount)
        return True


class HttpGateway(SignedNotifications):
    """
    Generic REST adapter.

    POST {base}/payments, GET {base}/payments/{order_no},
    POST {base}/payments/{order_no}/refund. Every call carries the configured
    timeout; timeouts, transport errors and 5xx answers are transient.
    """

    def __init__(
        self,
        method: str,
        base_url: str,
        secret: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.method = method
        self.secret = secret
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._timeout = timeout

    def _call(self, verb: str, path: str, **kwargs) -> dict:
        try:
            resp = self._client.request(verb, path, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise gateway_error(f"{self.method} gateway timed out", transient=True, path=path) from e
        except httpx.TransportError as e:
            raise gateway_error(f"{self.method} gateway unreachable: {e}", transient=True, path=path) from e

        if resp.status_code >= 500:
            raise gateway_error(
                f"{self.method} gateway error {resp.status_code}", transient=True, path=path
            )
        if resp.status_code >= 400:
            raise gateway_error(
                f"{self.method} gateway rejected request ({resp.status_code})", transient=False, path=path
            )
        try:
            return resp.json()
        except ValueError as e:
            raise gateway_error(
                f"{self.method} gateway sent an unreadable response", transient=False, path=path
            ) from e

    def create_payment(self, order_no: str, amount: Decimal, subject: str) -> PaymentSession:
        body = self._call(
            "POST", "/payments",
            json={"order_no": order_no, "amount": str(amount), "subject": subject},
        )
        return PaymentSession(
            method=self.method,
            redirect_url=body.get("redirect_url"),
            qr_url=body.get("qr_url"),
        )

    def query_status(self, order_no: str) -> str:
        return str(self._call("GET", f"/payments/{order_no}").get("status", "unknown"))

    def refund(self, order_no: str, amount: Decimal) -> bool:
        body = self._call("POST", f"/payments/{order_no}/refund", json={"amount": str(amount)})
        return bool(body.get("success"))

    def close(self) -> None:
        self._client.close()


class GatewayRegistry:
    def __init__(
        self,
        gateways: Mapping[str, PaymentGateway],
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ):
        self._gateways = dict(gateways)
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

    @property
    def methods(self):
        return sorted(self._gateways)

    def is_available(self, method: str) -> bool:
        return method in self._gateways

    def get(self, method: str) -> PaymentGateway:
        gateway = self._gateways.get(method)
        if gateway is None:
            raise ShopError(
                ErrorKind.VALIDATION,
                f"Payment method {method} is not available",
                payment_method=method,
            )
        return gateway

    def _retrying(self, op: str, method: str) -> Retrying:
        def _log_retry(state):
            logger.warning(
                "gateway_call_retry",
                op=op,
                payment_method=method,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            )

        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=8),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )

    def create_payment(self, method: str, order_no: str, amount: Decimal, subject: str) -> PaymentSession:
        # never retried: a duplicate session is worse than a visible failure
        return self.get(method).create_payment(order_no, amount, subject)

    def query_status(self, method: str, order_no: str) -> str:
        gateway = self.get(method)
        for attempt in self._retrying("query_status", method):
            with attempt:
                return gateway.query_status(order_no)

    def refund(self, method: str, order_no: str, amount: Decimal) -> bool:
        gateway = self.get(method)
        for attempt in self._retrying("refund", method):
            with attempt:
                return gateway.refund(order_no, amount)


def build_gateways(settings) -> GatewayRegistry:
    gateways: Dict[str, PaymentGateway] = {}
    for method in settings.enabled_payment_methods:
        if method == "sandbox":
            gateways[method] = SandboxGateway(settings.sandbox_gateway_secret)
        elif settings.gateway_base_url and settings.gateway_secret:
            gateways[method] = HttpGateway(
                method,
                settings.gateway_base_url.rstrip("/") + f"/{method}",
                settings.gateway_secret,
                timeout=settings.gateway_timeout_seconds,
            )
        else:
            logger.warning("payment_method_not_configured", payment_method=method)
    return GatewayRegistry(
        gateways,
        retry_attempts=settings.gateway_retry_attempts,
        retry_base_delay=settings.gateway_retry_base_delay,
    )
