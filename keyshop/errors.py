# keyshop/errors.py
"""
Error kinds for the fulfillment core.

Every failure the core reports is a ``ShopError`` tagged with one
``ErrorKind``. There are no subclasses: the HTTP boundary maps the kind to a
status code through ``STATUS_CODES`` and nothing else.
"""
import enum
from typing import Any, Dict


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    INSUFFICIENT_INVENTORY = "insufficient_inventory"
    AMOUNT_MISMATCH = "amount_mismatch"
    GATEWAY = "gateway_error"
    ALREADY_PROCESSED = "already_processed"
    OVERLOADED = "overloaded"


STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_INVENTORY: 409,
    ErrorKind.AMOUNT_MISMATCH: 422,
    ErrorKind.GATEWAY: 502,
    ErrorKind.ALREADY_PROCESSED: 200,
    ErrorKind.OVERLOADED: 503,
}

RETRIABLE = frozenset({
    ErrorKind.INSUFFICIENT_INVENTORY,
    ErrorKind.GATEWAY,
    ErrorKind.OVERLOADED,
})

# What a buyer sees; internal detail stays in the logs
PUBLIC_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INSUFFICIENT_INVENTORY: "Product is out of stock",
    ErrorKind.GATEWAY: "Payment service temporarily unavailable, please retry",
    ErrorKind.OVERLOADED: "Server is busy, please retry shortly",
}


class ShopError(Exception):
    def __init__(self, kind: ErrorKind, message: str, **details: Any):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "code": self.kind.value,
            "message": PUBLIC_MESSAGES.get(self.kind, self.message),
            "retriable": self.retriable,
        }
        if self.kind is ErrorKind.VALIDATION and self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"ShopError({self.kind.value!r}, {self.message!r})"
