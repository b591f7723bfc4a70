import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.payment.entity import Transaction, TransactionStatus
from domain.payment.exceptions import (
    InvalidTransitionError,
    StaleTransitionError,
    TransactionAlreadyExistsError,
    TransactionNotFoundError,
)


def _open(**overrides) -> Transaction:
    data = dict(
        user_id="u1",
        provider="iyzilink",
        method="credit_card",
        amount=Decimal("50.00"),
        currency="USD",
    )
    data.update(overrides)
    return Transaction.open(**data)


@pytest.mark.asyncio
async def test_create_and_lookup(repository):
    created = await repository.create(_open(idempotency_key="idem-1"))
    assert created.id is not None
    assert created.version == 1

    by_ref = await repository.get_by_reference(created.reference_number)
    by_key = await repository.get_by_idempotency_key("idem-1")
    assert by_ref.reference_number == by_key.reference_number == created.reference_number
    assert by_ref.amount == Decimal("50.00")
    assert by_ref.status is TransactionStatus.PENDING
    assert await repository.get_by_reference("PAY-MISSING") is None


@pytest.mark.asyncio
async def test_duplicate_idempotency_key_conflicts(repository):
    await repository.create(_open(idempotency_key="idem-dup"))
    with pytest.raises(TransactionAlreadyExistsError):
        await repository.create(_open(idempotency_key="idem-dup"))


@pytest.mark.asyncio
async def test_compare_and_transition_bumps_version(repository):
    tx = await repository.create(_open())
    updated = await repository.compare_and_transition(
        tx.reference_number,
        TransactionStatus.PENDING,
        TransactionStatus.COMPLETED,
        {"provider_transaction_id": "A-1", "processed_at": datetime.now(timezone.utc)},
        expected_version=tx.version,
    )
    assert updated.status is TransactionStatus.COMPLETED
    assert updated.version == tx.version + 1
    assert updated.provider_transaction_id == "A-1"
    assert (await repository.get_by_provider_transaction_id("A-1")).reference_number == tx.reference_number


@pytest.mark.asyncio
async def test_stale_expected_status_is_rejected(repository):
    tx = await repository.create(_open())
    await repository.compare_and_transition(tx.reference_number, TransactionStatus.PENDING, TransactionStatus.FAILED)
    with pytest.raises(StaleTransitionError) as info:
        await repository.compare_and_transition(
            tx.reference_number, TransactionStatus.PENDING, TransactionStatus.COMPLETED
        )
    assert info.value.actual == "failed"
    assert (await repository.get_by_reference(tx.reference_number)).status is TransactionStatus.FAILED


@pytest.mark.asyncio
async def test_stale_version_is_rejected(repository):
    tx = await repository.create(_open())
    await repository.compare_and_transition(
        tx.reference_number, TransactionStatus.PENDING, TransactionStatus.PENDING, {"failure_reason": "retry"}
    )
    with pytest.raises(StaleTransitionError):
        await repository.compare_and_transition(
            tx.reference_number,
            TransactionStatus.PENDING,
            TransactionStatus.COMPLETED,
            expected_version=tx.version,
        )


@pytest.mark.asyncio
async def test_unknown_reference_raises_not_found(repository):
    with pytest.raises(TransactionNotFoundError):
        await repository.compare_and_transition("PAY-NOPE", TransactionStatus.PENDING, TransactionStatus.COMPLETED)


@pytest.mark.asyncio
async def test_write_once_timestamps_keep_first_value(repository):
    tx = await repository.create(_open())
    first = datetime(2024, 1, 1, tzinfo=timezone.utc)
    await repository.compare_and_transition(
        tx.reference_number,
        TransactionStatus.PENDING,
        TransactionStatus.PENDING,
        {"webhook_received_at": first, "card_last_four": "4242"},
    )
    updated = await repository.compare_and_transition(
        tx.reference_number,
        TransactionStatus.PENDING,
        TransactionStatus.COMPLETED,
        {"webhook_received_at": first + timedelta(hours=1), "card_last_four": "0000"},
    )
    assert updated.webhook_received_at == first
    assert updated.card_last_four == "4242"


@pytest.mark.asyncio
async def test_provider_transaction_id_cannot_be_rewritten(repository):
    tx = await repository.create(_open())
    await repository.compare_and_transition(
        tx.reference_number, TransactionStatus.PENDING, TransactionStatus.PENDING, {"provider_transaction_id": "A-1"}
    )
    with pytest.raises(StaleTransitionError):
        await repository.compare_and_transition(
            tx.reference_number,
            TransactionStatus.PENDING,
            TransactionStatus.COMPLETED,
            {"provider_transaction_id": "A-2"},
        )
    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.provider_transaction_id == "A-1"
    assert stored.status is TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_provider_transaction_id_is_unique_across_transactions(repository):
    a = await repository.create(_open())
    b = await repository.create(_open())
    await repository.compare_and_transition(
        a.reference_number, TransactionStatus.PENDING, TransactionStatus.COMPLETED, {"provider_transaction_id": "A-9"}
    )
    with pytest.raises(TransactionAlreadyExistsError):
        await repository.compare_and_transition(
            b.reference_number, TransactionStatus.PENDING, TransactionStatus.COMPLETED, {"provider_transaction_id": "A-9"}
        )


@pytest.mark.asyncio
async def test_refunded_amount_guard(repository):
    tx = await repository.create(_open())
    await repository.compare_and_transition(tx.reference_number, TransactionStatus.PENDING, TransactionStatus.COMPLETED)
    with pytest.raises(StaleTransitionError):
        await repository.compare_and_transition(
            tx.reference_number,
            TransactionStatus.COMPLETED,
            TransactionStatus.PARTIALLY_REFUNDED,
            {"refunded_amount": Decimal("50.01")},
        )
    assert (await repository.get_by_reference(tx.reference_number)).refunded_amount == Decimal("0")


@pytest.mark.asyncio
async def test_forbidden_transition_is_never_written(repository):
    tx = await repository.create(_open())
    await repository.compare_and_transition(tx.reference_number, TransactionStatus.PENDING, TransactionStatus.FAILED)
    with pytest.raises(InvalidTransitionError):
        await repository.compare_and_transition(
            tx.reference_number, TransactionStatus.FAILED, TransactionStatus.COMPLETED
        )
    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.status is TransactionStatus.FAILED
    assert stored.version == tx.version + 1


@pytest.mark.asyncio
async def test_unknown_field_is_rejected(repository):
    tx = await repository.create(_open())
    with pytest.raises(ValueError):
        await repository.compare_and_transition(
            tx.reference_number, TransactionStatus.PENDING, TransactionStatus.COMPLETED, {"amount": Decimal("1.00")}
        )


@pytest.mark.asyncio
async def test_concurrent_transitions_have_one_winner(repository):
    tx = await repository.create(_open())

    async def attempt(target):
        try:
            return await repository.compare_and_transition(
                tx.reference_number, TransactionStatus.PENDING, target, expected_version=tx.version
            )
        except StaleTransitionError:
            return None

    results = await asyncio.gather(
        attempt(TransactionStatus.COMPLETED),
        attempt(TransactionStatus.FAILED),
        attempt(TransactionStatus.CANCELLED),
    )
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.status is winners[0].status
    assert stored.version == tx.version + 1


@pytest.mark.asyncio
async def test_list_by_user_filters_by_status(repository):
    a = await repository.create(_open(user_id="u7"))
    await repository.create(_open(user_id="u7"))
    await repository.create(_open(user_id="other"))
    await repository.compare_and_transition(a.reference_number, TransactionStatus.PENDING, TransactionStatus.COMPLETED)

    assert len(await repository.list_by_user("u7")) == 2
    completed = await repository.list_by_user("u7", TransactionStatus.COMPLETED)
    assert [t.reference_number for t in completed] == [a.reference_number]


@pytest.mark.asyncio
async def test_refund_reservation_counts_against_amount(repository):
    tx = await repository.create(_open())
    await repository.compare_and_transition(tx.reference_number, TransactionStatus.PENDING, TransactionStatus.COMPLETED)
    reserved = await repository.compare_and_transition(
        tx.reference_number,
        TransactionStatus.COMPLETED,
        TransactionStatus.COMPLETED,
        {"refunded_amount": Decimal("0"), "refund_pending_amount": Decimal("30.00")},
    )
    assert reserved.refund_pending_amount == Decimal("30.00")
    assert reserved.refundable_amount() == Decimal("20.00")

    with pytest.raises(StaleTransitionError):
        await repository.compare_and_transition(
            tx.reference_number,
            TransactionStatus.COMPLETED,
            TransactionStatus.PARTIALLY_REFUNDED,
            {"refunded_amount": Decimal("20.01")},
        )
    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.refunded_amount == Decimal("0")
    assert stored.refund_pending_amount == Decimal("30.00")


@pytest.mark.asyncio
async def test_search_filters_by_status_provider_and_age(repository):
    now = datetime.now(timezone.utc)
    old = _open(provider="stripe")
    old.created_at = now - timedelta(hours=5)
    old = await repository.create(old)
    failed = await repository.create(_open())
    await repository.compare_and_transition(failed.reference_number, TransactionStatus.PENDING, TransactionStatus.FAILED)
    fresh = await repository.create(_open())

    pending = await repository.search(statuses=[TransactionStatus.PENDING])
    assert [t.reference_number for t in pending] == [fresh.reference_number, old.reference_number]

    by_provider = await repository.search(provider=old.provider)
    assert [t.reference_number for t in by_provider] == [old.reference_number]

    recent = await repository.search(created_after=now - timedelta(hours=1))
    assert {t.reference_number for t in recent} == {failed.reference_number, fresh.reference_number}

    aged = await repository.search(
        statuses=[TransactionStatus.PENDING, TransactionStatus.PROCESSING],
        created_before=now - timedelta(hours=1),
    )
    assert [t.reference_number for t in aged] == [old.reference_number]

    assert len(await repository.search(limit=2)) == 2
