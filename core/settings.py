"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Providers are configured as a mapping keyed by provider name, e.g.::

    PAYMENT__DEFAULT_PROVIDER=iyzilink
    PAYMENT__PROVIDERS__IYZILINK__API_KEY=...
    PAYMENT__PROVIDERS__IYZILINK__SECRET_KEY=...
    PAYMENT__PROVIDERS__STRIPE__SECRET_KEY=sk_test_...
    PAYMENT__PROVIDERS__STRIPE__WEBHOOK_SECRET=whsec_...
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    # httpx per-phase timeouts for outbound provider calls
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0
    # Upper bound for a whole adapter call (including retries)
    provider_call_seconds: float = 10.0
    # Caller-facing deadline of submit/refund; the provider call keeps running past it
    request_timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def _check_ordering(self) -> "PaymentTimeouts":
        if self.provider_call_seconds >= self.request_timeout_seconds:
            raise ValueError("provider_call_seconds must be shorter than request_timeout_seconds")
        return self


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    max_clock_skew_seconds: int = 60


class ProviderConfig(BaseModel):
    """Credentials and endpoint of a single provider integration."""

    api_key: Optional[SecretStr] = None
    secret_key: Optional[SecretStr] = None
    webhook_secret: Optional[SecretStr] = None
    base_url: Optional[str] = None
    sandbox: bool = True
    # Square signs notification_url + body
    webhook_url: Optional[str] = None
    timeout_seconds: Optional[float] = None
    enabled: bool = True

    def signing_secret(self) -> Optional[str]:
        secret = self.webhook_secret or self.secret_key
        return secret.get_secret_value() if secret else None

    def api_key_value(self) -> Optional[str]:
        return self.api_key.get_secret_value() if self.api_key else None

    def secret_key_value(self) -> Optional[str]:
        return self.secret_key.get_secret_value() if self.secret_key else None


class PaymentSettings(BaseSettings):
    default_provider: str = "iyzilink"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("default_provider", mode="before")
    @classmethod
    def _lower_default(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("providers", mode="before")
    @classmethod
    def _lower_provider_keys(cls, v):
        if isinstance(v, dict):
            return {str(k).strip().lower(): cfg for k, cfg in v.items()}
        return v


payment_settings = PaymentSettings()
