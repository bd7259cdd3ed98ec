# keyshop/admission.py
"""
Admission control ahead of the core.

Caps the number of requests in flight. Overflow is rejected immediately with
a retriable 503 instead of queueing, which keeps the database pool from being
drained by a burst.
"""
import json

import structlog

from keyshop.errors import ErrorKind, ShopError
from keyshop.metrics import admission_rejected_total, requests_in_flight

logger = structlog.get_logger(__name__)

EXEMPT_PATHS = ("/healthz", "/metrics")


class AdmissionControlMiddleware:
    def __init__(self, app, max_in_flight: int = 100, retry_after_seconds: int = 1):
        self.app = app
        self.max_in_flight = max_in_flight
        self.retry_after_seconds = retry_after_seconds
        self.in_flight = 0

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["path"].startswith(EXEMPT_PATHS):
            await self.app(scope, receive, send)
            return

        # check-and-increment has no await in between: atomic on the event loop
        if self.in_flight >= self.max_in_flight:
            await self._reject(scope, send)
            return

        self.in_flight += 1
        requests_in_flight.inc()
        try:
            await self.app(scope, receive, send)
        finally:
            self.in_flight -= 1
            requests_in_flight.dec()

    async def _reject(self, scope, send) -> None:
        admission_rejected_total.inc()
        logger.warning(
            "request_rejected_overloaded",
            path=scope["path"],
            in_flight=self.in_flight,
            limit=self.max_in_flight,
        )
        error = ShopError(ErrorKind.OVERLOADED, "Too many requests in flight")
        body = json.dumps(error.to_body()).encode("utf-8")
        await send({
            "type": "http.response.start",
            "status": error.status_code,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
                (b"retry-after", str(self.retry_after_seconds).encode()),
            ],
        })
        await send({"type": "http.response.body", "body": body})
