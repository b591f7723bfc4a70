"""Pytest bootstrap configuration.

Environment defaults are set before application settings are imported;
shared fixtures build a SQLite-backed store and a registry holding a
scriptable provider.
"""
import json
import os
import time
from decimal import Decimal
from typing import Any, Callable, Optional

# No tables/engine side effects on import of main
os.environ.setdefault("CREATE_TABLES_ON_STARTUP", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")

import pytest

from application.dtos.payments import (
    ChargeCommand,
    ChargeRequest,
    ChargeResult,
    PaymentInstrument,
    RefundRequest,
    RefundResult,
)
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.provider_registry import ProviderRegistry
from application.services.webhook_verifier import WebhookVerifier, compute_signature
from core.settings import ProviderConfig
from domain.payment.entity import PaymentMethod, ProviderName, TransactionStatus
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.repositories.transaction_repository import SQLAlchemyTransactionRepository


WEBHOOK_SECRET = "whsec_test"


class ScriptedProvider(BasePaymentClient):
    """In-process provider whose charge/refund behaviour is set per test.

    Webhook signatures use the default base64 HMAC-SHA256 scheme.
    """

    provider = ProviderName.IYZILINK
    supported_methods = frozenset({PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD})

    def __init__(self, config: Optional[ProviderConfig] = None):
        super().__init__(config or ProviderConfig(webhook_secret=WEBHOOK_SECRET))
        self.charge_calls: list[ChargeRequest] = []
        self.refund_calls: list[RefundRequest] = []
        # A-1, A-2, ... in call order
        self.on_charge: Callable[[ChargeRequest], Any] = lambda req: self.accept(f"A-{len(self.charge_calls)}")(req)
        self.on_refund: Callable[[RefundRequest], Any] = lambda req: RefundResult(
            provider_refund_id=f"R-{len(self.refund_calls)}", provider_status="success", amount=req.amount
        )

    @staticmethod
    def accept(provider_transaction_id: str, status: TransactionStatus = TransactionStatus.COMPLETED):
        def _handler(req: ChargeRequest) -> ChargeResult:
            return ChargeResult(
                provider_transaction_id=provider_transaction_id,
                provider_status="SUCCESS",
                status=status,
                card_last_four="4242",
                card_brand="VISA",
            )
        return _handler

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        self.charge_calls.append(req)
        result = self.on_charge(req)
        if hasattr(result, "__await__"):
            result = await result
        return result

    async def refund(self, req: RefundRequest) -> RefundResult:
        self.refund_calls.append(req)
        result = self.on_refund(req)
        if hasattr(result, "__await__"):
            result = await result
        return result


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(secret, body)


def iyzilink_webhook(
    *,
    payment_id: Optional[str] = "A-1",
    reference_number: Optional[str] = None,
    status: str = "SUCCESS",
    amount: str = "50.00",
    currency: str = "USD",
    event_time_ms: Optional[int] = None,
) -> bytes:
    payload = {
        "paymentId": payment_id,
        "basketId": reference_number,
        "status": status,
        "paidPrice": amount,
        "currency": currency,
        "iyziEventType": "API_AUTH",
        "iyziReferenceCode": "evt-1",
        "iyziEventTime": event_time_ms if event_time_ms is not None else int(time.time() * 1000),
    }
    return json.dumps({k: v for k, v in payload.items() if v is not None}).encode("utf-8")


def charge_command(**overrides) -> ChargeCommand:
    data = {
        "user_id": "user-1",
        "amount": Decimal("50.00"),
        "currency": "USD",
        "method": PaymentMethod.CREDIT_CARD,
        "instrument": PaymentInstrument(token="tok_visa"),
        "description": "order #1001",
    }
    data.update(overrides)
    return ChargeCommand(**data)


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def repository(session_factory):
    return SQLAlchemyTransactionRepository(session_factory)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def registry(provider):
    reg = ProviderRegistry()
    reg.register(ProviderName.IYZILINK, provider.config, provider, default=True)
    return reg.freeze()


@pytest.fixture
def verifier(registry):
    return WebhookVerifier(registry)


@pytest.fixture
def published():
    return []


@pytest.fixture
def orchestrator(registry, repository, verifier, published):
    async def publisher(event):
        published.append(event)

    return PaymentOrchestrator(
        registry,
        repository,
        verifier,
        provider_call_seconds=0.5,
        publisher=publisher,
    )
