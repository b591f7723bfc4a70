"""
PayPal Orders v2 adapter.

OAuth2 client-credentials token (cached until shortly before expiry), orders
created with ``intent=CAPTURE`` and the ``PayPal-Request-Id`` header set to
the reference number, which makes PayPal dedupe retried charges.
The stored provider transaction id is the capture id when PayPal returns one.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from application.dtos.payments import ChargeRequest, ChargeResult, RefundRequest, RefundResult
from domain.payment.entity import PaymentMethod, ProviderName
from infrastructure.external.payments.base import BasePaymentClient


class PaypalClient(BasePaymentClient):
    provider = ProviderName.PAYPAL
    signature_header = "Paypal-Transmission-Sig"
    supported_methods = frozenset({
        PaymentMethod.CREDIT_CARD,
        PaymentMethod.DEBIT_CARD,
        PaymentMethod.DIGITAL_WALLET,
    })
    default_base_url = "https://api-m.paypal.com"
    sandbox_base_url = "https://api-m.sandbox.paypal.com"

    def __init__(self, config, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def _error_details(self, data: Any) -> tuple[str, Optional[str]]:
        if isinstance(data, dict):
            details = data.get("details") or []
            first = details[0] if details and isinstance(details[0], dict) else {}
            message = first.get("description") or data.get("message") or data.get("error_description")
            code = first.get("issue") or data.get("name") or data.get("error")
            return str(message or "payment declined"), (str(code) if code else None)
        return super()._error_details(data)

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            async with self.client() as client:
                try:
                    response = await self._retry(
                        lambda: client.post(
                            f"{self.base_url}/v1/oauth2/token",
                            data={"grant_type": "client_credentials"},
                            auth=(self.config.api_key_value() or "", self.config.secret_key_value() or ""),
                        )
                    )
                except httpx.HTTPError as exc:
                    raise self._indeterminate(f"paypal token request failed: {type(exc).__name__}") from exc
            if response.status_code >= 400:
                # 凭证错误时请求未到达扣款环节
                raise self._rejected("paypal authentication failed", str(response.status_code))
            data = response.json()
            self._token = data["access_token"]
            self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 300)) - 60, 30)
            return self._token

    async def _auth_headers(self, request_id: str) -> dict[str, str]:
        token = await self._access_token()
        return {
            "Authorization": f"Bearer {token}",
            "PayPal-Request-Id": request_id,
            "Prefer": "return=representation",
        }

    @staticmethod
    def _payment_source(req: ChargeRequest) -> dict:
        inst = req.instrument
        if inst.token:
            return {"token": {"id": inst.token, "type": "BILLING_AGREEMENT"}}
        expiry = None
        if inst.expire_year and inst.expire_month:
            expiry = f"{inst.expire_year}-{str(inst.expire_month).zfill(2)}"
        return {
            "card": {
                "name": inst.card_holder_name,
                "number": inst.card_number.get_secret_value() if inst.card_number else None,
                "expiry": expiry,
                "security_code": inst.cvc.get_secret_value() if inst.cvc else None,
            }
        }

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": req.reference_number,
                    "custom_id": req.reference_number,
                    "invoice_id": req.reference_number,
                    "description": req.description,
                    "amount": {"currency_code": req.currency, "value": str(req.amount)},
                }
            ],
            "payment_source": self._payment_source(req),
        }
        self._log("payment_charge_request", reference_number=req.reference_number, amount=str(req.amount))
        data = await self._post_json(
            "/v2/checkout/orders", payload, headers=await self._auth_headers(req.reference_number)
        )

        order_id = data.get("id")
        if not order_id:
            raise self._indeterminate("PayPal response without order id", reference_number=req.reference_number)
        native = data.get("status")
        provider_tx_id = str(order_id)
        units = data.get("purchase_units") or [{}]
        captures = ((units[0] or {}).get("payments") or {}).get("captures") or []
        if captures:
            provider_tx_id = str(captures[0].get("id") or order_id)
            native = captures[0].get("status") or native
        if str(native).upper() in {"DECLINED", "FAILED", "DENIED"}:
            raise self._rejected("PayPal declined the payment", str(native), reference_number=req.reference_number)

        card = (data.get("payment_source") or {}).get("card") or {}
        result = ChargeResult(
            provider_transaction_id=provider_tx_id,
            provider_status=str(native) if native else None,
            status=self._map_status(native),
            card_last_four=card.get("last_digits"),
            card_brand=card.get("brand"),
        )
        self._log(
            "payment_charge_response",
            reference_number=req.reference_number,
            provider_transaction_id=provider_tx_id,
            provider_status=result.provider_status,
        )
        return result

    async def refund(self, req: RefundRequest) -> RefundResult:
        if req.amount <= 0:
            raise self._rejected("refund amount must be positive", reference_number=req.reference_number)
        payload = {
            "amount": {"value": str(req.amount), "currency_code": req.currency},
            "invoice_id": req.reference_number,
            "note_to_payer": req.reason,
        }
        data = await self._post_json(
            f"/v2/payments/captures/{req.provider_transaction_id}/refund",
            payload,
            headers=await self._auth_headers(req.idempotency_key),
        )
        status = str(data.get("status") or "")
        if status.upper() in {"FAILED", "CANCELLED"}:
            raise self._rejected("PayPal refund failed", status, reference_number=req.reference_number)
        self._log("payment_refund_response", reference_number=req.reference_number, provider_status=status)
        return RefundResult(provider_refund_id=data.get("id"), provider_status=status, amount=req.amount)
