import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import RefundResult
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.provider_registry import ProviderRegistry
from application.services.webhook_verifier import WebhookVerifier
from core.settings import ProviderConfig
from domain.payment.entity import ProviderName, TransactionStatus
from domain.payment.events import TransactionRefunded
from domain.payment.exceptions import (
    ExcessiveRefundError,
    ProviderIndeterminateError,
    ProviderRejectedError,
)
from infrastructure.external.payments.iyzilink_client import IyzilinkClient

from conftest import charge_command, iyzilink_webhook, sign


def _iyzilink_gateway(refunds: list):
    """In-memory IyziLink: accepts every charge, records every refund that reaches it."""

    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path.endswith("/payment/auth"):
            return httpx.Response(200, json={"status": "success", "paymentId": "IZ-1", "paymentStatus": "SUCCESS"})
        await asyncio.sleep(0.05)
        refunds.append(Decimal(body["price"]))
        return httpx.Response(200, json={"status": "success", "paymentTransactionId": f"IZR-{len(refunds)}"})

    return IyzilinkClient(
        ProviderConfig(api_key="api-key", secret_key="secret-key"),
        retry={"max": 2, "base": 0.001},
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_concurrent_equal_refunds_are_each_sent_and_counted(repository):
    refunds: list[Decimal] = []
    client = _iyzilink_gateway(refunds)
    registry = ProviderRegistry()
    registry.register(ProviderName.IYZILINK, client.config, client, default=True)
    registry.freeze()
    orchestrator = PaymentOrchestrator(registry, repository, WebhookVerifier(registry), provider_call_seconds=2)

    tx = await orchestrator.submit(charge_command())
    assert tx.provider_transaction_id == "IZ-1"

    await asyncio.gather(
        orchestrator.refund(tx.reference_number, Decimal("20.00")),
        orchestrator.refund(tx.reference_number, Decimal("20.00")),
    )

    assert refunds == [Decimal("20.00"), Decimal("20.00")]
    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.refunded_amount == sum(refunds)
    assert stored.refund_pending_amount == Decimal("0")
    assert stored.status is TransactionStatus.PARTIALLY_REFUNDED
    await client.aclose()


@pytest.mark.asyncio
async def test_in_flight_refund_is_reserved(orchestrator, provider, repository):
    tx = await orchestrator.submit(charge_command())
    release = asyncio.Event()

    async def held(req):
        await release.wait()
        return RefundResult(provider_refund_id="R-1", provider_status="success", amount=req.amount)

    provider.on_refund = held
    first = asyncio.ensure_future(orchestrator.refund(tx.reference_number, Decimal("20.00")))
    while not provider.refund_calls:
        await asyncio.sleep(0.01)

    during = await repository.get_by_reference(tx.reference_number)
    assert during.refund_pending_amount == Decimal("20.00")
    assert during.refunded_amount == Decimal("0")
    with pytest.raises(ExcessiveRefundError):
        await orchestrator.refund(tx.reference_number, Decimal("40.00"))
    assert len(provider.refund_calls) == 1

    release.set()
    settled = await first
    assert settled.refunded_amount == Decimal("20.00")
    assert settled.refund_pending_amount == Decimal("0")
    assert settled.status is TransactionStatus.PARTIALLY_REFUNDED


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["20.00", "50.00"])
async def test_refund_confirmed_after_full_refund_webhook(orchestrator, provider, published, amount):
    tx = await orchestrator.submit(charge_command())

    async def webhook_first(req):
        body = iyzilink_webhook(payment_id="A-1", reference_number=tx.reference_number, status="REFUND")
        await orchestrator.reconcile_webhook("iyzilink", body, sign(body))
        return RefundResult(provider_refund_id="R-1", provider_status="success", amount=req.amount)

    provider.on_refund = webhook_first
    result = await orchestrator.refund(tx.reference_number, Decimal(amount))

    assert result.status is TransactionStatus.REFUNDED
    assert result.refunded_amount == Decimal("50.00")
    assert result.refund_pending_amount == Decimal("0")
    refunded_events = [e for e in published if isinstance(e, TransactionRefunded)]
    assert len(refunded_events) == 1
    assert refunded_events[0].fully_refunded is True


@pytest.mark.asyncio
async def test_rejected_refund_releases_reservation(orchestrator, provider, repository):
    tx = await orchestrator.submit(charge_command())

    def reject(req):
        raise ProviderRejectedError("refund window closed", provider="iyzilink")

    provider.on_refund = reject
    with pytest.raises(ProviderRejectedError):
        await orchestrator.refund(tx.reference_number, Decimal("50.00"))
    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.refund_pending_amount == Decimal("0")
    assert stored.status is TransactionStatus.COMPLETED

    provider.on_refund = lambda req: RefundResult(provider_refund_id="R-2", provider_status="success", amount=req.amount)
    final = await orchestrator.refund(tx.reference_number, Decimal("50.00"))
    assert final.status is TransactionStatus.REFUNDED


@pytest.mark.asyncio
async def test_unanswered_refund_stays_reserved_until_webhook(orchestrator, provider, repository):
    tx = await orchestrator.submit(charge_command())

    async def silent(req):
        await asyncio.sleep(5)

    provider.on_refund = silent
    with pytest.raises(ProviderIndeterminateError) as info:
        await orchestrator.refund(tx.reference_number, Decimal("50.00"))
    assert info.value.reference_number == tx.reference_number

    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.status is TransactionStatus.COMPLETED
    assert stored.refund_pending_amount == Decimal("50.00")
    with pytest.raises(ExcessiveRefundError):
        await orchestrator.refund(tx.reference_number, Decimal("1.00"))

    body = iyzilink_webhook(payment_id="A-1", reference_number=tx.reference_number, status="REFUND")
    result = await orchestrator.reconcile_webhook("iyzilink", body, sign(body))
    assert result.transaction.status is TransactionStatus.REFUNDED
    assert result.transaction.refund_pending_amount == Decimal("0")


# ------------------------------------------------------------ request deadline


@pytest.mark.asyncio
async def test_submit_returns_at_request_deadline_and_settles_later(registry, repository, verifier, provider):
    orchestrator = PaymentOrchestrator(
        registry, repository, verifier, provider_call_seconds=5, request_timeout_seconds=0.2
    )

    async def slow(req):
        await asyncio.sleep(0.6)
        return provider.accept("A-1")(req)

    provider.on_charge = slow
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ProviderIndeterminateError) as info:
        await orchestrator.submit(charge_command())
    assert loop.time() - started < 0.5

    reference = info.value.reference_number
    assert (await repository.get_by_reference(reference)).status is TransactionStatus.PENDING

    await orchestrator.drain()
    settled = await repository.get_by_reference(reference)
    assert settled.status is TransactionStatus.COMPLETED
    assert settled.provider_transaction_id == "A-1"


@pytest.mark.asyncio
async def test_refund_returns_at_request_deadline_and_settles_later(registry, repository, verifier, provider):
    orchestrator = PaymentOrchestrator(
        registry, repository, verifier, provider_call_seconds=5, request_timeout_seconds=0.2
    )
    tx = await orchestrator.submit(charge_command())

    async def slow(req):
        await asyncio.sleep(0.6)
        return RefundResult(provider_refund_id="R-1", provider_status="success", amount=req.amount)

    provider.on_refund = slow
    with pytest.raises(ProviderIndeterminateError):
        await orchestrator.refund(tx.reference_number, Decimal("10.00"))

    await orchestrator.drain()
    stored = await repository.get_by_reference(tx.reference_number)
    assert stored.refunded_amount == Decimal("10.00")
    assert stored.refund_pending_amount == Decimal("0")
    assert stored.status is TransactionStatus.PARTIALLY_REFUNDED
