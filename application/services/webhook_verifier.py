"""
Webhook verification and normalization.

``verify`` and ``parse`` are pure: no store access, no side effects beyond
logging. Reconciliation against stored transactions lives in the
orchestrator.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from application.dtos.payments import WebhookEvent
from application.services.provider_registry import ProviderRegistry
from application.services.webhook_parsers import PARSERS
from core.logging_config import get_logger
from domain.payment.entity import ProviderName
from domain.payment.exceptions import UnknownProviderError, WebhookExpiredError, WebhookParseError


logger = get_logger(__name__)


def compute_signature(secret: str, data: bytes) -> str:
    """base64(HMAC-SHA256(secret, data))"""
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def signatures_match(expected: Optional[str], provided: Optional[str]) -> bool:
    """Constant-time comparison; empty values never match."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.strip().encode("utf-8"), provided.strip().encode("utf-8"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookVerifier:
    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        tolerance_seconds: int = 300,
        max_clock_skew_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._tolerance = timedelta(seconds=tolerance_seconds)
        self._skew = timedelta(seconds=max_clock_skew_seconds)
        self._clock = clock

    def verify(self, provider_name: "str | ProviderName", raw_body: bytes, signature_header: Optional[str]) -> bool:
        if not signature_header:
            return False
        try:
            _, provider = self._registry.resolve(provider_name)
        except UnknownProviderError:
            return False
        return bool(provider.verify_signature(raw_body, signature_header))

    def signature_header_for(self, provider_name: "str | ProviderName") -> str:
        _, provider = self._registry.resolve(provider_name)
        return provider.signature_header

    def is_timestamp_valid(self, occurred_at: Optional[datetime]) -> bool:
        """Events without a timestamp pass; others must lie in [now - tolerance, now + skew]."""
        if occurred_at is None:
            return True
        now = self._clock()
        return now - self._tolerance <= occurred_at <= now + self._skew

    def signed_at(self, provider_name: "str | ProviderName", signature_header: Optional[str]) -> Optional[datetime]:
        if not signature_header:
            return None
        try:
            _, provider = self._registry.resolve(provider_name)
        except UnknownProviderError:
            return None
        return provider.signed_at(signature_header)

    def parse(
        self,
        provider_name: "str | ProviderName",
        raw_body: bytes,
        signature_header: Optional[str] = None,
    ) -> WebhookEvent:
        """Normalize the body into a WebhookEvent and enforce the replay window.

        When the provider signs a timestamp (Stripe ``t=``) the window is
        checked against it; otherwise against the event time in the body.
        """
        try:
            name = ProviderName.parse(provider_name)
        except ValueError:
            raise WebhookParseError(f"unknown provider: {provider_name}", provider=str(provider_name))
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            raise WebhookParseError("webhook body is not valid JSON", provider=name.value)
        if not isinstance(payload, dict):
            raise WebhookParseError("webhook body must be a JSON object", provider=name.value)

        event = PARSERS[name](payload)
        if not event.provider_transaction_id and not event.reference_number:
            raise WebhookParseError("webhook carries no transaction identifier", provider=name.value)
        checked_at = self.signed_at(name, signature_header) or event.occurred_at
        if not self.is_timestamp_valid(checked_at):
            logger.warning(
                "webhook_timestamp_rejected",
                provider=name.value,
                checked_at=checked_at.isoformat() if checked_at else None,
                event_id=event.event_id,
            )
            raise WebhookExpiredError(
                provider=name.value,
                occurred_at=checked_at.isoformat() if checked_at else None,
            )
        return event
