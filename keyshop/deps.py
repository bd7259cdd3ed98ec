from dataclasses import dataclass
from typing import Optional

import redis
from fastapi import Header, HTTPException, Request

from keyshop.config import settings
from keyshop.gateways import GatewayRegistry, build_gateways
from keyshop.notifications import Mailer, NotificationChannel, build_channel, build_mailer
from keyshop.pricing import PricingProvider, TablePricing
from keyshop.services.inventory import InventoryAlerter
from keyshop.services.verification import VerificationCodes
from keyshop.vault import KeyVault


@dataclass
class Services:
    """Process-wide collaborators, built once in the lifespan."""
    vault: KeyVault
    gateways: GatewayRegistry
    pricing: PricingProvider
    alerter: InventoryAlerter
    notifier: NotificationChannel
    mailer: Mailer
    codes: VerificationCodes


def build_services(cfg=settings) -> Services:
    channel = build_channel(cfg)
    store = redis.Redis.from_url(cfg.redis_url, decode_responses=True)
    return Services(
        vault=KeyVault.from_hex(cfg.encryption_key),
        gateways=build_gateways(cfg),
        pricing=TablePricing(),
        alerter=InventoryAlerter(
            store,
            channel,
            threshold=cfg.inventory_alert_threshold,
            cooldown_seconds=cfg.inventory_alert_cooldown_seconds,
        ),
        notifier=channel,
        mailer=build_mailer(cfg),
        codes=VerificationCodes(
            store,
            ttl_seconds=cfg.verification_code_ttl_seconds,
            max_attempts=cfg.verification_max_attempts,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> str:
    """Real client address behind a proxy (first X-Forwarded-For hop)."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


def require_admin(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    if settings.admin_api_token and x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Admin token required")
