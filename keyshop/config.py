from decimal import Decimal
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite:///./keyshop.db", alias="DATABASE_URL")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # 32-byte AES key as 64 hex chars; loaded once, never stored next to ciphertext
    encryption_key: str = Field(alias="ENCRYPTION_KEY")

    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    admin_api_token: Optional[str] = Field(default=None, alias="ADMIN_API_TOKEN")

    # Payment gateways
    payment_methods: str = Field(default="sandbox", alias="PAYMENT_METHODS")
    sandbox_gateway_secret: str = Field(default="sandbox-secret", alias="SANDBOX_GATEWAY_SECRET")
    gateway_base_url: Optional[str] = Field(default=None, alias="GATEWAY_BASE_URL")
    gateway_secret: Optional[str] = Field(default=None, alias="GATEWAY_SECRET")
    gateway_timeout_seconds: float = Field(default=10.0, alias="GATEWAY_TIMEOUT_SECONDS")
    gateway_retry_attempts: int = Field(default=3, ge=1, alias="GATEWAY_RETRY_ATTEMPTS")
    gateway_retry_base_delay: float = Field(default=0.5, ge=0, alias="GATEWAY_RETRY_BASE_DELAY")

    # Orders / allocation
    amount_tolerance: Decimal = Field(default=Decimal("0.01"), alias="AMOUNT_TOLERANCE")
    max_quantity_per_order: int = Field(default=10, ge=1, alias="MAX_QUANTITY_PER_ORDER")
    allocation_max_attempts: int = Field(default=3, ge=1, alias="ALLOCATION_MAX_ATTEMPTS")
    stuck_order_age_minutes: int = Field(default=30, alias="STUCK_ORDER_AGE_MINUTES")

    # Inventory alerting
    inventory_alert_threshold: int = Field(default=10, alias="INVENTORY_ALERT_THRESHOLD")
    inventory_alert_cooldown_seconds: int = Field(default=86400, alias="INVENTORY_ALERT_COOLDOWN_SECONDS")
    inventory_check_interval_seconds: int = Field(default=3600, alias="INVENTORY_CHECK_INTERVAL_SECONDS")
    inventory_monitor_enabled: bool = Field(default=True, alias="INVENTORY_MONITOR_ENABLED")
    notify_webhook_url: Optional[str] = Field(default=None, alias="NOTIFY_WEBHOOK_URL")

    # Order confirmation mail; empty host -> log only
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_from: str = Field(default="noreply@keyshop.local", alias="SMTP_FROM")
    smtp_use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")

    # Buyer self-service: emailed verification codes
    verification_code_ttl_seconds: int = Field(default=600, alias="VERIFICATION_CODE_TTL_SECONDS")
    verification_max_attempts: int = Field(default=5, ge=1, alias="VERIFICATION_MAX_ATTEMPTS")

    # Admission control
    max_in_flight_requests: int = Field(default=100, ge=1, alias="MAX_IN_FLIGHT_REQUESTS")

    # Pydantic v2-style config: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        v = v.strip()
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError("ENCRYPTION_KEY must be a hexadecimal string")
        if len(raw) != 32:
            raise ValueError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        return v

    @property
    def enabled_payment_methods(self) -> List[str]:
        return [m.strip().lower() for m in self.payment_methods.split(",") if m.strip()]

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


settings = Settings()
