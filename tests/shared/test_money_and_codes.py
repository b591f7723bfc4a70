from decimal import Decimal

import pytest

from core.exceptions import business_code_to_http_status
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode, normalize_status
from shared.money import from_minor, minor_unit_exponent, to_minor


@pytest.mark.parametrize(
    "amount,currency,expected",
    [
        (Decimal("50.00"), "USD", 5000),
        (Decimal("0.01"), "EUR", 1),
        (Decimal("1200"), "JPY", 1200),
        (Decimal("10.005"), "USD", 1001),
    ],
)
def test_to_minor(amount, currency, expected):
    assert to_minor(amount, currency) == expected


def test_from_minor():
    assert from_minor(5000, "usd") == Decimal("50.00")
    assert from_minor(1200, "JPY") == Decimal("1200.00")
    assert minor_unit_exponent("KRW") == 0
    assert minor_unit_exponent("TRY") == 2


@pytest.mark.parametrize(
    "provider,native,expected",
    [
        ("stripe", "succeeded", "completed"),
        ("stripe", "processing", "processing"),
        ("stripe", "requires_action", "pending"),
        ("stripe", "canceled", "cancelled"),
        ("iyzilink", "SUCCESS", "completed"),
        ("iyzilink", "failure", "failed"),
        ("paypal", "COMPLETED", "completed"),
        ("paypal", "DECLINED", "failed"),
        ("square", "APPROVED", "processing"),
        ("unknown-provider", "succeeded", "completed"),
    ],
)
def test_normalize_status(provider, native, expected):
    assert normalize_status(provider, native) == expected


@pytest.mark.parametrize("native", [None, "", "   ", "brand_new_status"])
def test_unknown_statuses_are_not_guessed(native):
    assert normalize_status("stripe", native) is None


def test_http_status_mapping():
    assert business_code_to_http_status(PaymentCode.PROVIDER_REJECTED) == 402
    assert business_code_to_http_status(PaymentCode.PROVIDER_RECOVERABLE) == 503
    assert business_code_to_http_status(PaymentCode.STALE_TRANSITION) == 409
    assert business_code_to_http_status(PaymentCode.TRANSACTION_NOT_FOUND) == 404
    assert business_code_to_http_status(BusinessCode.FORBIDDEN) == 403
    assert business_code_to_http_status(99999) == 400
