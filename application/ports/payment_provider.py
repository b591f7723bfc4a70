"""
Payment provider port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import ChargeRequest, ChargeResult, RefundRequest, RefundResult
from domain.payment.entity import PaymentMethod, ProviderName


@runtime_checkable
class PaymentProvider(Protocol):
    """Capability interface for third-party payment providers.

    ``charge`` and ``refund`` raise ProviderRejectedError on an explicit decline
    and ProviderIndeterminateError when the outcome is unknown. Both must be
    safe to retry with the same reference number / idempotency key.
    ``verify_signature`` is pure and never raises for bad input.
    ``signed_at`` returns the timestamp covered by the signature, or None when
    the scheme signs none.
    """

    provider: ProviderName
    signature_header: str

    async def charge(self, req: ChargeRequest) -> ChargeResult: ...

    async def refund(self, req: RefundRequest) -> RefundResult: ...

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> bool: ...

    def signed_at(self, signature_header: Optional[str]) -> Optional[datetime]: ...

    def provider_name(self) -> ProviderName: ...

    def supports(self, method: PaymentMethod) -> bool: ...

    async def aclose(self) -> None: ...
