"""
Square Payments API adapter.

Charges and refunds carry Square's ``idempotency_key``; webhook signatures
are base64(HMAC-SHA256(signature key, notification URL + raw body)) in the
``x-square-hmacsha256-signature`` header.
"""
from __future__ import annotations

from typing import Any, Optional

from application.dtos.payments import ChargeRequest, ChargeResult, RefundRequest, RefundResult
from application.services.webhook_verifier import compute_signature, signatures_match
from domain.payment.entity import PaymentMethod, ProviderName
from infrastructure.external.payments.base import BasePaymentClient
from shared.money import to_minor

SQUARE_API_VERSION = "2024-01-18"
# Square limits idempotency keys to 45 characters
_MAX_IDEMPOTENCY_KEY = 45


class SquareClient(BasePaymentClient):
    provider = ProviderName.SQUARE
    signature_header = "x-square-hmacsha256-signature"
    supported_methods = frozenset({
        PaymentMethod.CREDIT_CARD,
        PaymentMethod.DEBIT_CARD,
        PaymentMethod.DIGITAL_WALLET,
    })
    default_base_url = "https://connect.squareup.com"
    sandbox_base_url = "https://connect.squareupsandbox.com"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key_value() or ''}",
            "Square-Version": SQUARE_API_VERSION,
        }

    def _error_details(self, data: Any) -> tuple[str, Optional[str]]:
        if isinstance(data, dict) and data.get("errors"):
            first = data["errors"][0] or {}
            return str(first.get("detail") or "payment declined"), first.get("code")
        return super()._error_details(data)

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        if not req.instrument.token:
            raise self._rejected("Square requires a card nonce or token", reference_number=req.reference_number)
        payload = {
            "idempotency_key": req.reference_number,
            "source_id": req.instrument.token,
            "amount_money": {"amount": to_minor(req.amount, req.currency), "currency": req.currency},
            "reference_id": req.reference_number,
            "note": req.description,
            "autocomplete": True,
        }
        if req.customer is not None and req.customer.email:
            payload["buyer_email_address"] = req.customer.email
        self._log("payment_charge_request", reference_number=req.reference_number, amount=str(req.amount))
        data = await self._post_json("/v2/payments", payload, headers=self._headers())

        payment = data.get("payment") or {}
        if not payment.get("id"):
            raise self._indeterminate("Square response without payment id", reference_number=req.reference_number)
        native = payment.get("status")
        if str(native).upper() == "FAILED":
            raise self._rejected("Square declined the payment", "FAILED", reference_number=req.reference_number)
        card = (payment.get("card_details") or {}).get("card") or {}
        result = ChargeResult(
            provider_transaction_id=str(payment["id"]),
            provider_status=native,
            status=self._map_status(native),
            card_last_four=card.get("last_4"),
            card_brand=card.get("card_brand"),
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
        payload = {
            "idempotency_key": req.idempotency_key[:_MAX_IDEMPOTENCY_KEY],
            "payment_id": req.provider_transaction_id,
            "amount_money": {"amount": to_minor(req.amount, req.currency), "currency": req.currency},
            "reason": req.reason,
        }
        data = await self._post_json("/v2/refunds", payload, headers=self._headers())
        refund = data.get("refund") or {}
        status = str(refund.get("status") or "")
        if status.upper() in {"REJECTED", "FAILED"}:
            raise self._rejected("Square refund was rejected", status, reference_number=req.reference_number)
        self._log("payment_refund_response", reference_number=req.reference_number, provider_status=status)
        return RefundResult(provider_refund_id=refund.get("id"), provider_status=status, amount=req.amount)

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        secret = self.config.signing_secret()
        if not secret or not signature_header:
            return False
        signed = (self.config.webhook_url or "").encode("utf-8") + raw_body
        return signatures_match(compute_signature(secret, signed), signature_header)
