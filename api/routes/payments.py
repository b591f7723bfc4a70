"""
Payments API routes.

Thin façade over PaymentOrchestrator: submit, read, list, refund, the
admin queries and the provider webhook endpoint. No SDK or provider details here.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from api.dependencies import Caller, get_caller, get_orchestrator
from application.dtos.payments import ChargeCommand, RefundCommand, TransactionView
from application.services.authorization import ensure_admin, ensure_owner
from application.services.payment_orchestrator import PaymentOrchestrator
from core.logging_config import get_logger
from core.response import success_response, to_json_response
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import ProviderName, TransactionStatus
from domain.payment.exceptions import (
    InvalidSignatureError,
    ProviderIndeterminateError,
    StaleTransitionError,
    TransactionAlreadyExistsError,
    UnknownProviderError,
    UnknownTransactionError,
    WebhookParseError,
)


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)

# 所有可预期的 Webhook 结果都返回同一个确认，避免向外泄露验签/对账细节
WEBHOOK_ACK = "Webhook received"


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_payment(
    cmd: ChargeCommand,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """发起扣款；渠道结果未知时返回 202，交易保持 pending 等待 Webhook 对账"""
    if not caller.is_admin or not cmd.user_id:
        cmd = cmd.model_copy(update={"user_id": caller.user_id})
    try:
        tx = await orchestrator.submit(cmd)
    except ProviderIndeterminateError as exc:
        return to_json_response(
            success_response(
                data={
                    "reference_number": exc.reference_number,
                    "status": TransactionStatus.PENDING.value,
                },
                message="Payment is being processed",
            ),
            status.HTTP_202_ACCEPTED,
        )
    return to_json_response(success_response(data=TransactionView.from_entity(tx)), status.HTTP_201_CREATED)


@router.get("")
async def list_payments(
    user_id: Optional[str] = Query(default=None),
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    owner = user_id or caller.user_id
    if not owner:
        raise DomainValidationException("user_id is required", field="user_id")
    if owner != caller.user_id:
        ensure_admin(caller.is_admin)
    items = await orchestrator.list_for_user(owner, status_filter)
    return success_response(data=[TransactionView.from_entity(tx) for tx in items])


@router.get("/admin/transactions")
async def search_payments(
    statuses: Optional[List[TransactionStatus]] = Query(default=None, alias="status"),
    provider: Optional[ProviderName] = Query(default=None),
    since_hours: Optional[int] = Query(default=None, ge=1, le=24 * 90),
    older_than_minutes: Optional[int] = Query(default=None, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """运营查询：按状态、渠道与创建时间筛选（仅管理员）"""
    ensure_admin(caller.is_admin)
    now = datetime.now(timezone.utc)
    items = await orchestrator.search(
        statuses=statuses,
        provider=provider,
        created_after=now - timedelta(hours=since_hours) if since_hours else None,
        created_before=now - timedelta(minutes=older_than_minutes) if older_than_minutes else None,
        limit=limit,
    )
    return success_response(data=[TransactionView.from_entity(tx) for tx in items])


@router.get("/admin/stuck")
async def stuck_payments(
    older_than_minutes: int = Query(default=30, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """长时间停留在 pending/processing 的交易，需要人工向渠道核实"""
    ensure_admin(caller.is_admin)
    items = await orchestrator.stuck(timedelta(minutes=older_than_minutes), limit=limit)
    return success_response(data=[TransactionView.from_entity(tx) for tx in items])


@router.get("/admin/failed")
async def failed_payments(
    since_hours: int = Query(default=24, ge=1, le=24 * 90),
    limit: int = Query(default=100, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    ensure_admin(caller.is_admin)
    items = await orchestrator.failed_since(timedelta(hours=since_hours), limit=limit)
    return success_response(data=[TransactionView.from_entity(tx) for tx in items])


@router.get("/{reference_number}")
async def get_payment(
    reference_number: str,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    tx = await orchestrator.get(reference_number)
    ensure_owner(tx, caller.user_id, is_admin=caller.is_admin)
    return success_response(data=TransactionView.from_entity(tx))


@router.post("/{reference_number}/refunds")
async def refund_payment(
    reference_number: str,
    cmd: RefundCommand,
    caller: Caller = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    ensure_admin(caller.is_admin)
    tx = await orchestrator.refund(reference_number, cmd.amount, cmd.reason)
    return success_response(data=TransactionView.from_entity(tx), message="Refund accepted")


@router.post("/webhooks/{provider}")
async def payments_webhook(
    provider: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    raw_body = await request.body()
    signature = request.headers.get(orchestrator.webhook_signature_header(provider))
    try:
        result = await orchestrator.reconcile_webhook(provider, raw_body, signature)
    except (InvalidSignatureError, UnknownProviderError, WebhookParseError, UnknownTransactionError) as exc:
        logger.info("webhook_acknowledged_without_apply", provider=provider, reason=type(exc).__name__)
        return success_response(message=WEBHOOK_ACK)
    except (TransactionAlreadyExistsError, StaleTransitionError) as exc:
        # 渠道ID冲突或持续竞争：记录后确认，交易保持原状等待对账
        logger.warning(
            "webhook_not_applied",
            provider=provider,
            reason=type(exc).__name__,
            error=exc.message,
        )
        return success_response(message=WEBHOOK_ACK)

    logger.info(
        "webhook_processed",
        provider=provider,
        reference_number=result.transaction.reference_number,
        outcome=result.outcome.value,
    )
    return success_response(message=WEBHOOK_ACK)
