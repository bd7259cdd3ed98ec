# keyshop/notifications.py
"""Outbound channels: admin alerts and buyer order-confirmation mail."""
import smtplib
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


class NotificationChannel(Protocol):
    def send(self, title: str, body: str) -> bool: ...


class Mailer(Protocol):
    def send_order_confirmation(self, email: str, order: Dict[str, Any], keys: List[Dict[str, Any]]) -> bool: ...

    def send_verification_code(self, email: str, code: str) -> bool: ...


class LogChannel:
    """Writes alerts to the log; the default when no webhook is configured."""

    def send(self, title: str, body: str) -> bool:
        logger.warning("admin_notification", title=title, body=body)
        return True


class WebhookChannel:
    """Posts ``{"title", "desp"}`` JSON to a push webhook (ServerChan-style)."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, title: str, body: str) -> bool:
        try:
            resp = self._client.post(self.url, json={"title": title, "desp": body})
        except httpx.HTTPError as e:
            logger.error("webhook_notification_failed", error=str(e))
            return False
        if resp.status_code >= 400:
            logger.error("webhook_notification_rejected", status_code=resp.status_code)
            return False
        return True


class LogMailer:
    def send_order_confirmation(self, email: str, order: Dict[str, Any], keys: List[Dict[str, Any]]) -> bool:
        # key material stays out of the log
        logger.info(
            "order_confirmation_mail",
            to=email,
            order_no=order.get("order_no"),
            key_count=len(keys),
        )
        return True

    def send_verification_code(self, email: str, code: str) -> bool:
        # the code itself is a credential
        logger.info("verification_code_mail", to=email)
        return True


class SmtpMailer:
    def __init__(self, host: str, port: int, user: str, password: str, sender: str, use_tls: bool = True,
                 code_ttl_minutes: int = 10):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.code_ttl_minutes = code_ttl_minutes

    def _send(self, email: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = email
        with smtplib.SMTP(self.host, self.port, timeout=15) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.sendmail(self.sender, [email], msg.as_string())

    def _render(self, order: Dict[str, Any], keys: List[Dict[str, Any]]) -> str:
        lines = [
            f"Thank you for your order {order['order_no']}.",
            f"Total: {order['total_amount']} {order['currency']}",
            "",
            "Your license keys:",
        ]
        lines += [f"  {k['key']}" for k in keys]
        return "\n".join(lines)

    def send_order_confirmation(self, email: str, order: Dict[str, Any], keys: List[Dict[str, Any]]) -> bool:
        self._send(email, f"Your order {order['order_no']}", self._render(order, keys))
        logger.info("order_confirmation_mail_sent", order_no=order["order_no"], key_count=len(keys))
        return True

    def send_verification_code(self, email: str, code: str) -> bool:
        self._send(
            email,
            "Your verification code",
            f"Your verification code is {code}.\nIt expires in {self.code_ttl_minutes} minutes.",
        )
        return True


def build_channel(settings) -> NotificationChannel:
    if settings.notify_webhook_url:
        return WebhookChannel(settings.notify_webhook_url)
    return LogChannel()


def build_mailer(settings) -> Mailer:
    if settings.smtp_host:
        return SmtpMailer(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.smtp_from,
            use_tls=settings.smtp_use_tls,
            code_ttl_minutes=max(settings.verification_code_ttl_seconds // 60, 1),
        )
    return LogMailer()
