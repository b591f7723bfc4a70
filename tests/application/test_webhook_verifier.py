import json
from datetime import datetime, timedelta, timezone

import pytest

from application.services.provider_registry import ProviderRegistry
from application.services.webhook_verifier import WebhookVerifier, compute_signature, signatures_match
from core.settings import ProviderConfig
from domain.payment.entity import ProviderName, TransactionStatus
from domain.payment.exceptions import WebhookExpiredError, WebhookParseError
from infrastructure.external.payments.stripe_client import StripeClient

from conftest import WEBHOOK_SECRET, iyzilink_webhook, sign


def test_compute_signature_is_base64_hmac_sha256():
    # base64(HMAC-SHA256("key", "The quick brown fox jumps over the lazy dog"))
    assert (
        compute_signature("key", b"The quick brown fox jumps over the lazy dog")
        == "97yD9DBThCSxMpjmqm+xQ+9NWaFJRhdZl0edvC0aPNg="
    )


def test_signatures_match_rejects_empty_values():
    assert signatures_match("abc", "abc")
    assert not signatures_match("abc", "abd")
    assert not signatures_match("", "")
    assert not signatures_match("abc", None)


def test_verify_accepts_valid_signature(verifier):
    body = iyzilink_webhook(reference_number="PAY-1")
    assert verifier.verify("iyzilink", body, sign(body))
    assert verifier.verify("IYZILINK", body, sign(body))


def test_verify_rejects_tampered_body_and_wrong_secret(verifier):
    body = iyzilink_webhook(reference_number="PAY-1")
    signature = sign(body)
    assert not verifier.verify("iyzilink", body.replace(b"50.00", b"5.00"), signature)
    assert not verifier.verify("iyzilink", body, sign(body, secret="not-" + WEBHOOK_SECRET))
    assert not verifier.verify("iyzilink", body, None)
    assert not verifier.verify("iyzilink", body, "")


def test_verify_unknown_or_unregistered_provider_is_false(verifier):
    body = b"{}"
    assert not verifier.verify("stripe", body, sign(body))
    assert not verifier.verify("bitpay", body, sign(body))


def test_signature_header_comes_from_adapter(verifier):
    assert verifier.signature_header_for("iyzilink") == "X-Webhook-Signature"


def test_parse_normalizes_iyzilink_event(verifier):
    event = verifier.parse("iyzilink", iyzilink_webhook(payment_id="A-1", reference_number="PAY-1"))
    assert event.provider is ProviderName.IYZILINK
    assert event.provider_transaction_id == "A-1"
    assert event.reference_number == "PAY-1"
    assert event.status is TransactionStatus.COMPLETED
    assert str(event.amount) == "50.00"
    assert event.currency == "USD"


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'"text"', b"\xff\xfe"])
def test_parse_rejects_malformed_bodies(verifier, body):
    with pytest.raises(WebhookParseError):
        verifier.parse("iyzilink", body)


def test_parse_requires_a_transaction_identifier(verifier):
    with pytest.raises(WebhookParseError):
        verifier.parse("iyzilink", iyzilink_webhook(payment_id=None, reference_number=None))


def test_parse_unknown_provider(verifier):
    with pytest.raises(WebhookParseError):
        verifier.parse("bitpay", b"{}")


def test_timestamp_window(registry):
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    verifier = WebhookVerifier(registry, tolerance_seconds=300, max_clock_skew_seconds=60, clock=lambda: now)

    assert verifier.is_timestamp_valid(None)
    assert verifier.is_timestamp_valid(now - timedelta(seconds=299))
    assert verifier.is_timestamp_valid(now + timedelta(seconds=59))
    assert not verifier.is_timestamp_valid(now - timedelta(seconds=301))
    assert not verifier.is_timestamp_valid(now + timedelta(seconds=61))

    stale_ms = int((now - timedelta(minutes=10)).timestamp() * 1000)
    with pytest.raises(WebhookExpiredError):
        verifier.parse("iyzilink", iyzilink_webhook(reference_number="PAY-1", event_time_ms=stale_ms))

    fresh_ms = int((now - timedelta(seconds=5)).timestamp() * 1000)
    event = verifier.parse("iyzilink", iyzilink_webhook(reference_number="PAY-1", event_time_ms=fresh_ms))
    assert event.occurred_at == datetime.fromtimestamp(fresh_ms / 1000, tz=timezone.utc)


def test_unmapped_status_is_left_empty(verifier):
    body = json.dumps({"paymentId": "A-1", "status": "SOMETHING_NEW"}).encode()
    event = verifier.parse("iyzilink", body)
    assert event.status is None
    assert event.provider_status == "SOMETHING_NEW"


def test_stripe_window_uses_signed_timestamp():
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    stripe_client = StripeClient(ProviderConfig(secret_key="sk_test_123", webhook_secret="whsec_test"))
    registry = ProviderRegistry()
    registry.register(ProviderName.STRIPE, stripe_client.config, stripe_client, default=True)
    verifier = WebhookVerifier(registry.freeze(), tolerance_seconds=300, clock=lambda: now)

    # Stripe retries keep the original "created" but sign a fresh t=
    body = json.dumps({
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "created": int((now - timedelta(hours=3)).timestamp()),
        "data": {"object": {"object": "payment_intent", "id": "pi_1", "status": "succeeded",
                            "amount": 5000, "currency": "usd"}},
    }).encode()
    fresh = f"t={int((now - timedelta(seconds=10)).timestamp())},v1=abc"
    stale = f"t={int((now - timedelta(minutes=10)).timestamp())},v1=abc"

    event = verifier.parse("stripe", body, fresh)
    assert event.provider_transaction_id == "pi_1"
    with pytest.raises(WebhookExpiredError):
        verifier.parse("stripe", body, stale)
    with pytest.raises(WebhookExpiredError):
        verifier.parse("stripe", body)


def test_stripe_signed_at_reads_t_component():
    client = StripeClient(ProviderConfig(secret_key="sk_test_123", webhook_secret="whsec_test"))
    assert client.signed_at("t=1717243200,v1=abc") == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert client.signed_at("v1=abc") is None
    assert client.signed_at("t=soon,v1=abc") is None
    assert client.signed_at(None) is None
