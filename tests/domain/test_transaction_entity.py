import re
from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    ALLOWED_TRANSITIONS,
    PaymentMethod,
    ProviderName,
    Transaction,
    TransactionStatus,
    can_transition,
    generate_reference_number,
    validate_amount,
)


def _tx(**overrides) -> Transaction:
    data = dict(
        user_id="u1",
        provider="stripe",
        method="credit_card",
        amount=Decimal("50.00"),
        currency="usd",
    )
    data.update(overrides)
    return Transaction.open(**data)


def test_open_creates_pending_transaction_with_reference():
    tx = _tx()
    assert tx.status is TransactionStatus.PENDING
    assert tx.provider is ProviderName.STRIPE
    assert tx.method is PaymentMethod.CREDIT_CARD
    assert tx.currency == "USD"
    assert re.fullmatch(r"PAY-[0-9A-F]{16}", tx.reference_number)
    assert tx.created_at is not None and tx.created_at.tzinfo is not None
    assert tx.refunded_amount == Decimal("0")
    assert tx.provider_transaction_id is None


def test_reference_numbers_are_unique():
    refs = {generate_reference_number() for _ in range(500)}
    assert len(refs) == 500


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1.00"), Decimal("1.001"), Decimal("NaN")])
def test_invalid_amounts_rejected(amount):
    with pytest.raises(DomainValidationException):
        validate_amount(amount)


@pytest.mark.parametrize("currency", ["US", "USDX", "12$", ""])
def test_invalid_currency_rejected(currency):
    with pytest.raises(DomainValidationException):
        _tx(currency=currency)


def test_refunded_amount_cannot_exceed_amount():
    with pytest.raises(DomainValidationException):
        Transaction(
            reference_number="PAY-0000000000000001",
            user_id="u1",
            provider=ProviderName.STRIPE,
            method=PaymentMethod.CREDIT_CARD,
            amount=Decimal("10.00"),
            currency="USD",
            refunded_amount=Decimal("10.01"),
        )


def test_provider_name_parse_is_case_insensitive():
    assert ProviderName.parse("IyziLink") is ProviderName.IYZILINK
    assert ProviderName.parse(" STRIPE ") is ProviderName.STRIPE
    with pytest.raises(ValueError):
        ProviderName.parse("bitpay")
    with pytest.raises(ValueError):
        ProviderName.parse(None)


@pytest.mark.parametrize(
    "current,target",
    [
        (TransactionStatus.PENDING, TransactionStatus.PROCESSING),
        (TransactionStatus.PENDING, TransactionStatus.COMPLETED),
        (TransactionStatus.PENDING, TransactionStatus.FAILED),
        (TransactionStatus.PENDING, TransactionStatus.CANCELLED),
        (TransactionStatus.PROCESSING, TransactionStatus.COMPLETED),
        (TransactionStatus.PROCESSING, TransactionStatus.FAILED),
        (TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED),
        (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED),
        (TransactionStatus.COMPLETED, TransactionStatus.DISPUTED),
        (TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.REFUNDED),
        (TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.DISPUTED),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (TransactionStatus.COMPLETED, TransactionStatus.PENDING),
        (TransactionStatus.COMPLETED, TransactionStatus.FAILED),
        (TransactionStatus.FAILED, TransactionStatus.COMPLETED),
        (TransactionStatus.REFUNDED, TransactionStatus.PARTIALLY_REFUNDED),
        (TransactionStatus.CANCELLED, TransactionStatus.COMPLETED),
        (TransactionStatus.PROCESSING, TransactionStatus.CANCELLED),
        (TransactionStatus.DISPUTED, TransactionStatus.REFUNDED),
    ],
)
def test_forbidden_transitions(current, target):
    assert not can_transition(current, target)


def test_terminal_statuses_have_no_outgoing_edges():
    for status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED, TransactionStatus.REFUNDED):
        assert ALLOWED_TRANSITIONS[status] == frozenset()
    tx = _tx()
    tx.status = TransactionStatus.REFUNDED
    assert tx.is_terminal()


def test_refund_and_dispute_accounting_are_independent():
    tx = _tx()
    tx.status = TransactionStatus.PARTIALLY_REFUNDED
    tx.refunded_amount = Decimal("20.00")
    tx.disputed_amount = Decimal("30.00")
    assert tx.can_refund()
    assert tx.refundable_amount() == Decimal("30.00")
    assert tx.net_amount() == Decimal("0.00")


def test_pending_transaction_is_not_refundable():
    tx = _tx()
    assert not tx.can_refund()
    assert not tx.is_terminal()


def test_pending_refunds_reduce_refundable_amount():
    tx = _tx()
    tx.status = TransactionStatus.COMPLETED
    tx.refunded_amount = Decimal("20.00")
    tx.refund_pending_amount = Decimal("30.00")
    assert tx.refundable_amount() == Decimal("0.00")
    assert not tx.can_refund()


def test_pending_refund_cannot_exceed_unrefunded_amount():
    with pytest.raises(DomainValidationException) as info:
        Transaction(
            reference_number="PAY-0000000000000002",
            user_id="u1",
            provider=ProviderName.STRIPE,
            method=PaymentMethod.CREDIT_CARD,
            amount=Decimal("10.00"),
            currency="USD",
            refunded_amount=Decimal("4.00"),
            refund_pending_amount=Decimal("6.01"),
        )
    assert info.value.field == "refund_pending_amount"
