"""
IyziLink adapter (JSON over HTTPS, IYZWS HMAC authorization).

Request signing: ``Authorization: IYZWS <api_key>:<base64 HMAC-SHA256(secret, api_key + rnd + body)>``
with the random nonce sent as ``x-iyzi-rnd``. The provider has no native
idempotency, so charges are deduplicated in-process on the reference number.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from typing import Any, Optional

from application.dtos.payments import ChargeRequest, ChargeResult, RefundRequest, RefundResult
from domain.payment.entity import PaymentMethod, ProviderName
from infrastructure.external.payments.base import BasePaymentClient, CallDeduplicator


class IyzilinkClient(BasePaymentClient):
    provider = ProviderName.IYZILINK
    supported_methods = frozenset({PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD})
    default_base_url = "https://api.iyzipay.com"
    sandbox_base_url = "https://sandbox-api.iyzipay.com"

    def __init__(self, config, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self._charges = CallDeduplicator()
        self._refunds = CallDeduplicator()

    def _auth_headers(self, body: str) -> dict[str, str]:
        api_key = self.config.api_key_value() or ""
        secret = self.config.secret_key_value() or ""
        rnd = secrets.token_hex(8)
        digest = hmac.new(secret.encode("utf-8"), f"{api_key}{rnd}{body}".encode("utf-8"), hashlib.sha256).digest()
        return {
            "Authorization": f"IYZWS {api_key}:{base64.b64encode(digest).decode('ascii')}",
            "x-iyzi-rnd": rnd,
        }

    async def _signed_post(self, path: str, payload: dict) -> dict:
        body = json.dumps(payload, separators=(",", ":"), default=str)
        return await self._post_json(path, payload, headers=self._auth_headers(body), body=body)

    def _error_details(self, data: Any) -> tuple[str, Optional[str]]:
        if isinstance(data, dict):
            code = data.get("errorCode")
            return str(data.get("errorMessage") or "payment declined"), (str(code) if code is not None else None)
        return super()._error_details(data)

    @staticmethod
    def _payment_card(req: ChargeRequest) -> dict:
        inst = req.instrument
        if inst.token:
            return {"cardToken": inst.token}
        return {
            "cardHolderName": inst.card_holder_name,
            "cardNumber": inst.card_number.get_secret_value() if inst.card_number else None,
            "expireMonth": inst.expire_month,
            "expireYear": inst.expire_year,
            "cvc": inst.cvc.get_secret_value() if inst.cvc else None,
            "registerCard": 0,
        }

    def _charge_payload(self, req: ChargeRequest) -> dict:
        price = str(req.amount)
        customer = req.customer
        address = req.billing_address
        payload: dict[str, Any] = {
            "locale": "en",
            "conversationId": req.reference_number,
            "price": price,
            "paidPrice": price,
            "currency": req.currency,
            "installment": 1,
            "basketId": req.reference_number,
            "paymentChannel": "WEB",
            "paymentGroup": "PRODUCT",
            "paymentCard": self._payment_card(req),
        }
        if customer is not None:
            payload["buyer"] = {
                "id": customer.id,
                "name": customer.name,
                "surname": customer.surname,
                "email": customer.email,
                "gsmNumber": customer.phone,
                "ip": customer.ip,
            }
        if address is not None:
            payload["billingAddress"] = {
                "contactName": address.contact_name,
                "address": address.line1,
                "city": address.city,
                "country": address.country,
                "zipCode": address.postal_code,
            }
        return payload

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        return await self._charges.run(req.reference_number, lambda: self._do_charge(req))

    async def _do_charge(self, req: ChargeRequest) -> ChargeResult:
        self._log("payment_charge_request", reference_number=req.reference_number, amount=str(req.amount))
        data = await self._signed_post("/payment/auth", self._charge_payload(req))

        if str(data.get("status", "")).lower() != "success":
            message, code = self._error_details(data)
            self._log("payment_charge_declined", reference_number=req.reference_number, provider_code=code)
            raise self._rejected(message, code, reference_number=req.reference_number)

        payment_id = data.get("paymentId")
        if not payment_id:
            raise self._indeterminate("IyziLink success response without paymentId", reference_number=req.reference_number)

        native = data.get("paymentStatus") or "SUCCESS"
        card = data.get("paymentCard") or {}
        last_four = data.get("lastFourDigits") or card.get("cardLastFour")
        result = ChargeResult(
            provider_transaction_id=str(payment_id),
            provider_status=str(native),
            status=self._map_status(native),
            card_last_four=str(last_four) if last_four else None,
            card_brand=data.get("cardAssociation") or card.get("cardFamily"),
        )
        self._log(
            "payment_charge_response",
            reference_number=req.reference_number,
            provider_transaction_id=result.provider_transaction_id,
            provider_status=result.provider_status,
        )
        return result

    async def refund(self, req: RefundRequest) -> RefundResult:
        if req.amount <= 0:
            raise self._rejected("refund amount must be positive", reference_number=req.reference_number)
        return await self._refunds.run(req.idempotency_key, lambda: self._do_refund(req))

    async def _do_refund(self, req: RefundRequest) -> RefundResult:
        payload = {
            "locale": "en",
            "conversationId": req.reference_number,
            "paymentTransactionId": req.provider_transaction_id,
            "price": str(req.amount),
            "currency": req.currency,
            "ip": req.ip or "127.0.0.1",
        }
        data = await self._signed_post("/payment/refund", payload)
        if str(data.get("status", "")).lower() != "success":
            message, code = self._error_details(data)
            raise self._rejected(message, code, reference_number=req.reference_number)
        self._log("payment_refund_response", reference_number=req.reference_number, amount=str(req.amount))
        return RefundResult(
            provider_refund_id=str(data.get("paymentTransactionId") or data.get("paymentId") or "") or None,
            provider_status="success",
            amount=req.amount,
        )
