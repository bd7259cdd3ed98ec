# keyshop/services/verification.py
"""
Email verification codes for buyer self-service.

A buyer proves they own the order email by echoing a six-digit code that was
mailed to them. Codes live in Redis under ``verification:{email}`` with a
TTL; a second counter caps wrong guesses per code.
"""
import hmac
import secrets
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from keyshop.errors import ErrorKind, ShopError
from keyshop.notifications import Mailer
from keyshop.services.orders import get_order, same_email

logger = structlog.get_logger(__name__)

CODE_KEY = "verification:{email}"
ATTEMPTS_KEY = "verification:attempts:{email}"


def _canonical(email: str) -> str:
    return email.strip().lower()


class VerificationCodes:
    def __init__(self, store, ttl_seconds: int = 600, max_attempts: int = 5):
        # store: a redis.Redis client (get/set/incr/expire/delete)
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts

    def issue(self, email: str) -> str:
        email = _canonical(email)
        code = f"{secrets.randbelow(1_000_000):06d}"
        self.store.set(CODE_KEY.format(email=email), code, ex=self.ttl_seconds)
        self.store.delete(ATTEMPTS_KEY.format(email=email))
        return code

    def verify(self, email: str, code: Optional[str]) -> bool:
        email = _canonical(email)
        if not code:
            return False
        code_key = CODE_KEY.format(email=email)
        attempts_key = ATTEMPTS_KEY.format(email=email)

        attempts = self.store.incr(attempts_key)
        if attempts == 1:
            self.store.expire(attempts_key, self.ttl_seconds)
        if attempts > self.max_attempts:
            # burn the code; the buyer has to request a new one
            self.store.delete(code_key)
            logger.warning("verification_attempts_exhausted", attempts=attempts)
            return False

        stored = self.store.get(code_key)
        if stored is None:
            return False
        if isinstance(stored, bytes):
            stored = stored.decode("utf-8")
        if not hmac.compare_digest(stored, code.strip()):
            return False
        self.store.delete(attempts_key)
        return True

    def require(self, email: str, code: Optional[str]) -> None:
        if not self.verify(email, code):
            raise ShopError(ErrorKind.VALIDATION, "Invalid or expired verification code")


def send_verification_code(
    db: Session,
    codes: VerificationCodes,
    mailer: Mailer,
    email: str,
    order_no: Optional[str] = None,
) -> bool:
    """
    Issue and mail a code. With ``order_no`` the email must belong to that order.

    Returns whether the mail went out; a failed send still leaves the code valid.
    """
    if order_no is not None:
        order = get_order(db, order_no)
        if not same_email(order.email, email):
            raise ShopError(ErrorKind.NOT_FOUND, f"Order {order_no} not found")

    code = codes.issue(email)
    try:
        sent = bool(mailer.send_verification_code(email, code))
    except Exception:
        logger.exception("verification_code_mail_failed")
        return False
    logger.info("verification_code_issued", order_no=order_no, mailed=sent)
    return sent
