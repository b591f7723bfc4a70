"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic.types import condecimal

from domain.payment.entity import PaymentMethod, ProviderName, Transaction, TransactionStatus

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "TRY", "CNY", "JPY", "KRW", "HKD", "AUD", "CAD",
    "SGD", "CHF", "SEK", "NOK", "DKK", "PLN", "NZD", "MXN", "BRL", "INR",
}

Money = condecimal(gt=0, max_digits=15, decimal_places=2)


def _validate_currency(v: str) -> str:
    u = (v or "").strip().upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class PaymentInstrument(BaseModel):
    """Card fields or a provider-issued token; secrets never reach logs or storage."""

    token: Optional[str] = None
    card_holder_name: Optional[str] = None
    card_number: Optional[SecretStr] = None
    expire_month: Optional[str] = None
    expire_year: Optional[str] = None
    cvc: Optional[SecretStr] = None

    @model_validator(mode="after")
    def _token_or_card(self) -> "PaymentInstrument":
        if not self.token and not self.card_number:
            raise ValueError("either token or card_number is required")
        return self

    @property
    def last_four(self) -> Optional[str]:
        if self.card_number is None:
            return None
        digits = "".join(ch for ch in self.card_number.get_secret_value() if ch.isdigit())
        return digits[-4:] or None


class Customer(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    ip: Optional[str] = None


class Address(BaseModel):
    contact_name: Optional[str] = None
    line1: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class ChargeCommand(BaseModel):
    user_id: Optional[str] = None
    amount: Money  # type: ignore[valid-type]
    currency: str
    provider: Optional[ProviderName] = None
    method: PaymentMethod
    instrument: PaymentInstrument
    description: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=200)
    customer: Optional[Customer] = None
    billing_address: Optional[Address] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)

    @field_validator("provider", mode="before")
    @classmethod
    def _lower_provider(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class ChargeRequest(BaseModel):
    """What an adapter receives; reference_number doubles as the idempotency token."""

    reference_number: str
    amount: Decimal
    currency: str
    method: PaymentMethod
    instrument: PaymentInstrument
    description: Optional[str] = None
    customer: Optional[Customer] = None
    billing_address: Optional[Address] = None


class ChargeResult(BaseModel):
    provider_transaction_id: str
    provider_status: Optional[str] = None
    status: Optional[TransactionStatus] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: Optional[dict[str, Any]] = None


class RefundRequest(BaseModel):
    reference_number: str
    provider_transaction_id: str
    amount: Money  # type: ignore[valid-type]
    currency: str
    reason: Optional[str] = None
    idempotency_key: str
    ip: Optional[str] = None


class RefundResult(BaseModel):
    provider_refund_id: Optional[str] = None
    provider_status: Optional[str] = None
    amount: Decimal


class RefundCommand(BaseModel):
    amount: Money  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=500)


class WebhookEvent(BaseModel):
    provider: ProviderName
    provider_transaction_id: Optional[str] = None
    reference_number: Optional[str] = None
    provider_status: Optional[str] = None
    status: Optional[TransactionStatus] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    occurred_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class TransactionView(BaseModel):
    reference_number: str
    user_id: Optional[str] = None
    provider: ProviderName
    method: PaymentMethod
    status: TransactionStatus
    amount: Decimal
    currency: str
    refunded_amount: Decimal
    disputed_amount: Decimal
    refund_pending_amount: Decimal = Decimal("0")
    net_amount: Decimal
    provider_transaction_id: Optional[str] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_entity(cls, tx: Transaction) -> "TransactionView":
        return cls(
            reference_number=tx.reference_number,
            user_id=tx.user_id,
            provider=tx.provider,
            method=tx.method,
            status=tx.status,
            amount=tx.amount,
            currency=tx.currency,
            refunded_amount=tx.refunded_amount,
            disputed_amount=tx.disputed_amount,
            refund_pending_amount=tx.refund_pending_amount,
            net_amount=tx.net_amount(),
            provider_transaction_id=tx.provider_transaction_id,
            card_last_four=tx.card_last_four,
            card_brand=tx.card_brand,
            description=tx.description,
            failure_reason=tx.failure_reason,
            created_at=tx.created_at,
            updated_at=tx.updated_at,
            processed_at=tx.processed_at,
            failed_at=tx.failed_at,
            refunded_at=tx.refunded_at,
            disputed_at=tx.disputed_at,
        )
