"""
Provider-specific webhook payload parsers.

Each parser turns a decoded JSON object into a normalized ``WebhookEvent``.
Provider statuses are normalized through ``shared.codes.payment_codes``;
anything unrecognized is left as ``status=None`` and ignored downstream.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from application.dtos.payments import WebhookEvent
from domain.payment.entity import ProviderName, TransactionStatus
from domain.payment.exceptions import WebhookParseError
from shared.codes.payment_codes import normalize_status
from shared.money import from_minor


def _obj(value: Any, name: str, provider: ProviderName) -> dict:
    if not isinstance(value, dict):
        raise WebhookParseError(f"'{name}' must be an object", provider=provider.value)
    return value


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _decimal(value: Any, provider: ProviderName) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise WebhookParseError(f"invalid amount: {value!r}", provider=provider.value)


def _minor(value: Any, currency: Optional[str], provider: ProviderName) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise WebhookParseError(f"invalid minor-unit amount: {value!r}", provider=provider.value)
    try:
        return from_minor(int(value), currency or "")
    except ValueError:
        raise WebhookParseError(f"invalid minor-unit amount: {value!r}", provider=provider.value)


def _epoch(value: Any, provider: ProviderName, *, millis: bool = False) -> Optional[datetime]:
    if value is None:
        return None
    try:
        seconds = float(value) / (1000.0 if millis else 1.0)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise WebhookParseError(f"invalid timestamp: {value!r}", provider=provider.value)


def _iso(value: Any, provider: ProviderName) -> Optional[datetime]:
    if value is None:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise WebhookParseError(f"invalid timestamp: {value!r}", provider=provider.value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _status(provider: ProviderName, native: Optional[str]) -> Optional[TransactionStatus]:
    internal = normalize_status(provider.value, native)
    return TransactionStatus(internal) if internal else None


def _upper(value: Any) -> Optional[str]:
    s = _str(value)
    return s.upper() if s else None


def parse_iyzilink(payload: dict) -> WebhookEvent:
    provider = ProviderName.IYZILINK
    native = _str(payload.get("status"))
    return WebhookEvent(
        provider=provider,
        provider_transaction_id=_str(payload.get("paymentId")),
        reference_number=_str(payload.get("basketId") or payload.get("paymentConversationId")),
        provider_status=native,
        status=_status(provider, native),
        amount=_decimal(payload.get("paidPrice") or payload.get("price"), provider),
        currency=_upper(payload.get("currency")),
        event_id=_str(payload.get("iyziReferenceCode")),
        event_type=_str(payload.get("iyziEventType")),
        occurred_at=_epoch(payload.get("iyziEventTime"), provider, millis=True),
        failure_reason=_str(payload.get("errorMessage")),
    )


def parse_stripe(payload: dict) -> WebhookEvent:
    provider = ProviderName.STRIPE
    event_type = _str(payload.get("type")) or ""
    data = _obj(payload.get("data"), "data", provider)
    obj = _obj(data.get("object"), "data.object", provider)
    currency = _upper(obj.get("currency"))
    kind = obj.get("object")

    if kind == "dispute" or event_type.startswith("charge.dispute."):
        provider_tx_id = _str(obj.get("payment_intent"))
        native = _str(obj.get("status"))
        status = TransactionStatus.DISPUTED if event_type == "charge.dispute.created" else _status(provider, native)
        amount = _minor(obj.get("amount"), currency, provider)
        reference = None
    elif kind == "charge":
        provider_tx_id = _str(obj.get("payment_intent")) or _str(obj.get("id"))
        if event_type == "charge.refunded":
            fully = bool(obj.get("refunded"))
            native = "refunded" if fully else "partially_refunded"
            status = TransactionStatus.REFUNDED if fully else TransactionStatus.PARTIALLY_REFUNDED
            amount = _minor(obj.get("amount_refunded"), currency, provider)
        else:
            native = _str(obj.get("status"))
            status = _status(provider, native)
            amount = _minor(obj.get("amount"), currency, provider)
        reference = _str((obj.get("metadata") or {}).get("reference_number"))
    else:
        provider_tx_id = _str(obj.get("id"))
        native = _str(obj.get("status"))
        status = _status(provider, native)
        if event_type == "payment_intent.payment_failed":
            status = TransactionStatus.FAILED
        amount = _minor(obj.get("amount_received") or obj.get("amount"), currency, provider)
        reference = _str((obj.get("metadata") or {}).get("reference_number"))

    error = obj.get("last_payment_error") or {}
    return WebhookEvent(
        provider=provider,
        provider_transaction_id=provider_tx_id,
        reference_number=reference,
        provider_status=native,
        status=status,
        amount=amount,
        currency=currency,
        event_id=_str(payload.get("id")),
        event_type=event_type or None,
        occurred_at=_epoch(payload.get("created"), provider),
        failure_reason=_str(error.get("message")) if isinstance(error, dict) else None,
    )


def parse_paypal(payload: dict) -> WebhookEvent:
    provider = ProviderName.PAYPAL
    event_type = _str(payload.get("event_type")) or ""
    resource = _obj(payload.get("resource"), "resource", provider)

    if event_type.startswith("CUSTOMER.DISPUTE."):
        disputed = resource.get("disputed_transactions") or [{}]
        first = disputed[0] if isinstance(disputed, list) and disputed and isinstance(disputed[0], dict) else {}
        money = resource.get("dispute_amount") or {}
        return WebhookEvent(
            provider=provider,
            provider_transaction_id=_str(first.get("seller_transaction_id")),
            reference_number=_str(first.get("custom")),
            provider_status=_str(resource.get("status")),
            status=TransactionStatus.DISPUTED if event_type == "CUSTOMER.DISPUTE.CREATED" else None,
            amount=_decimal(money.get("value"), provider),
            currency=_upper(money.get("currency_code")),
            event_id=_str(payload.get("id")),
            event_type=event_type,
            occurred_at=_iso(payload.get("create_time"), provider),
        )

    amount = resource.get("amount") or {}
    if not isinstance(amount, dict):
        raise WebhookParseError("'resource.amount' must be an object", provider=provider.value)
    native = _str(resource.get("status") or resource.get("state"))
    status = _status(provider, native)
    if event_type == "PAYMENT.CAPTURE.REFUNDED":
        # 退款事件的 resource 是退款单，关联的是捕获ID
        status = TransactionStatus.PARTIALLY_REFUNDED
    provider_tx_id = _str(resource.get("id"))
    if event_type.startswith("PAYMENT.CAPTURE.REFUND"):
        for link in resource.get("links") or []:
            if isinstance(link, dict) and link.get("rel") == "up":
                provider_tx_id = _str(str(link.get("href", "")).rstrip("/").rsplit("/", 1)[-1]) or provider_tx_id
    reason = resource.get("status_details") or {}
    return WebhookEvent(
        provider=provider,
        provider_transaction_id=provider_tx_id,
        reference_number=_str(resource.get("custom_id") or resource.get("custom") or resource.get("invoice_id")),
        provider_status=native,
        status=status,
        amount=_decimal(amount.get("value", amount.get("total")), provider),
        currency=_upper(amount.get("currency_code") or amount.get("currency")),
        event_id=_str(payload.get("id")),
        event_type=event_type or None,
        occurred_at=_iso(payload.get("create_time"), provider),
        failure_reason=_str(reason.get("reason")) if isinstance(reason, dict) else None,
    )


def parse_square(payload: dict) -> WebhookEvent:
    provider = ProviderName.SQUARE
    event_type = _str(payload.get("type")) or ""
    data = _obj(payload.get("data"), "data", provider)
    obj = _obj(data.get("object"), "data.object", provider)

    if "dispute" in obj:
        dispute = _obj(obj.get("dispute"), "data.object.dispute", provider)
        money = dispute.get("amount_money") or {}
        currency = _upper(money.get("currency"))
        payment_ref = dispute.get("disputed_payment") or {}
        return WebhookEvent(
            provider=provider,
            provider_transaction_id=_str(payment_ref.get("payment_id") or dispute.get("payment_id")),
            provider_status=_str(dispute.get("state")),
            status=TransactionStatus.DISPUTED if event_type == "dispute.created" else None,
            amount=_minor(money.get("amount"), currency, provider),
            currency=currency,
            event_id=_str(payload.get("event_id")),
            event_type=event_type or None,
            occurred_at=_iso(payload.get("created_at"), provider),
        )

    if "refund" in obj:
        refund = _obj(obj.get("refund"), "data.object.refund", provider)
        money = refund.get("amount_money") or {}
        currency = _upper(money.get("currency"))
        # Square 不区分全额/部分退款，退款累计以本地 refund() 为准
        return WebhookEvent(
            provider=provider,
            provider_transaction_id=_str(refund.get("payment_id")),
            provider_status=_str(refund.get("status")),
            status=None,
            amount=_minor(money.get("amount"), currency, provider),
            currency=currency,
            event_id=_str(payload.get("event_id")),
            event_type=event_type or None,
            occurred_at=_iso(payload.get("created_at"), provider),
        )

    payment = _obj(obj.get("payment"), "data.object.payment", provider)
    money = payment.get("amount_money") or {}
    currency = _upper(money.get("currency"))
    native = _str(payment.get("status"))
    return WebhookEvent(
        provider=provider,
        provider_transaction_id=_str(payment.get("id")),
        reference_number=_str(payment.get("reference_id")),
        provider_status=native,
        status=_status(provider, native),
        amount=_minor(money.get("amount"), currency, provider),
        currency=currency,
        event_id=_str(payload.get("event_id")),
        event_type=event_type or None,
        occurred_at=_iso(payload.get("created_at"), provider),
    )


PARSERS: dict[ProviderName, Callable[[dict], WebhookEvent]] = {
    ProviderName.IYZILINK: parse_iyzilink,
    ProviderName.STRIPE: parse_stripe,
    ProviderName.PAYPAL: parse_paypal,
    ProviderName.SQUARE: parse_square,
}
