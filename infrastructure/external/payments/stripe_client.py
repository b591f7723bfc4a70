"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- Module-level helpers accept per-request ``api_key`` and ``idempotency_key``
  kwargs; the reference number is the idempotency key, so Stripe itself
  dedupes retried charges.
- SDK calls are blocking and run in a worker thread.
- Webhook verification uses ``stripe.WebhookSignature.verify_header`` with
  the ``Stripe-Signature`` header (``t=...,v1=...``).
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from application.dtos.payments import ChargeRequest, ChargeResult, RefundRequest, RefundResult
from domain.payment.entity import PaymentMethod, ProviderName
from infrastructure.external.payments.base import BasePaymentClient
from shared.money import to_minor


class StripeClient(BasePaymentClient):
    provider = ProviderName.STRIPE
    signature_header = "Stripe-Signature"
    supported_methods = frozenset({
        PaymentMethod.CREDIT_CARD,
        PaymentMethod.DEBIT_CARD,
        PaymentMethod.DIGITAL_WALLET,
        PaymentMethod.BANK_TRANSFER,
    })

    def __init__(self, config, *, tolerance_seconds: int = 300, **kwargs) -> None:
        super().__init__(config, **kwargs)
        if not config.secret_key_value():
            raise RuntimeError("PAYMENT__PROVIDERS__STRIPE__SECRET_KEY not configured")
        self._tolerance_seconds = tolerance_seconds

    @property
    def _api_key(self) -> str:
        return self.config.secret_key_value() or ""

    def _map_sdk_error(self, exc: Exception, reference_number: str):
        """CardError/InvalidRequest/Authentication -> rejected; everything else -> indeterminate."""
        if isinstance(exc, (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError)):
            code = getattr(exc, "code", None)
            message = getattr(exc, "user_message", None) or str(exc)
            self._log("payment_provider_rejected", reference_number=reference_number, provider_code=code)
            return self._rejected(message, code, reference_number=reference_number)
        self._log("payment_provider_indeterminate", reference_number=reference_number, error=type(exc).__name__)
        return self._indeterminate(f"stripe error: {exc}", reference_number=reference_number)

    @staticmethod
    def _card_details(pi: Any) -> tuple[Optional[str], Optional[str]]:
        charge = pi.get("latest_charge")
        if isinstance(charge, dict) or hasattr(charge, "get"):
            details = (charge.get("payment_method_details") or {}).get("card") or {}
            return details.get("last4"), details.get("brand")
        return None, None

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        token = req.instrument.token
        if not token:
            raise self._rejected("Stripe requires a tokenized payment method", reference_number=req.reference_number)
        self._log("payment_charge_request", reference_number=req.reference_number, amount=str(req.amount))
        try:
            pi = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=to_minor(req.amount, req.currency),
                currency=req.currency.lower(),
                payment_method=token,
                confirm=True,
                description=req.description,
                metadata={"reference_number": req.reference_number},
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                expand=["latest_charge"],
                idempotency_key=req.reference_number,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise self._map_sdk_error(exc, req.reference_number) from exc

        native = str(pi["status"])
        last_four, brand = self._card_details(pi)
        error = pi.get("last_payment_error") or {}
        result = ChargeResult(
            provider_transaction_id=str(pi["id"]),
            provider_status=native,
            status=self._map_status(native),
            card_last_four=last_four,
            card_brand=brand,
            failure_reason=error.get("message") if error else None,
        )
        self._log(
            "payment_charge_response",
            reference_number=req.reference_number,
            provider_transaction_id=result.provider_transaction_id,
            provider_status=native,
        )
        return result

    async def refund(self, req: RefundRequest) -> RefundResult:
        if req.amount <= 0:
            raise self._rejected("refund amount must be positive", reference_number=req.reference_number)
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=req.provider_transaction_id,
                amount=to_minor(req.amount, req.currency),
                metadata={"reference_number": req.reference_number, "reason": req.reason or ""},
                idempotency_key=req.idempotency_key,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise self._map_sdk_error(exc, req.reference_number) from exc
        status = str(refund.get("status") or "")
        if status == "failed":
            raise self._rejected("Stripe refund failed", reference_number=req.reference_number)
        self._log("payment_refund_response", reference_number=req.reference_number, provider_status=status)
        return RefundResult(provider_refund_id=str(refund["id"]), provider_status=status, amount=req.amount)

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        secret = self.config.signing_secret()
        if not secret or not signature_header:
            return False
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, tolerance=self._tolerance_seconds
            )
        except stripe.SignatureVerificationError:
            return False
        return True

    def signed_at(self, signature_header: Optional[str]) -> Optional[datetime]:
        # t=<unix seconds> is covered by the v1 signature
        for part in (signature_header or "").split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                try:
                    return datetime.fromtimestamp(int(value), tz=timezone.utc)
                except (ValueError, OverflowError, OSError):
                    return None
        return None
