"""
Application service orchestrating the transaction lifecycle.

Depends only on application ports (PaymentProvider, TransactionRepository)
and the registry/verifier; adapters and the store are injected from the
composition root (main.py / tests).

Every status change goes through ``TransactionRepository.compare_and_transition``.
Concurrent writers on the same reference are linearized there; a loser
re-reads and re-evaluates (already applied -> no-op, no longer valid -> dropped).
"""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from application.dtos.payments import ChargeCommand, ChargeRequest, ChargeResult, RefundRequest, WebhookEvent
from application.ports.payment_provider import PaymentProvider
from application.services.provider_registry import ProviderRegistry
from application.services.webhook_verifier import WebhookVerifier
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    ProviderName,
    Transaction,
    TransactionStatus,
    can_transition,
    validate_amount,
)
from domain.payment.events import (
    TransactionCancelled,
    TransactionCompleted,
    TransactionDisputed,
    TransactionEvent,
    TransactionFailed,
    TransactionRefunded,
)
from domain.payment.exceptions import (
    ExcessiveRefundError,
    InvalidSignatureError,
    NotRefundableError,
    ProviderIndeterminateError,
    ProviderRejectedError,
    StaleTransitionError,
    TransactionAlreadyExistsError,
    TransactionNotFoundError,
    UnknownProviderError,
    UnknownTransactionError,
    UnsupportedMethodError,
)
from domain.payment.repository import TransactionRepository


logger = get_logger(__name__)

DEFAULT_SIGNATURE_HEADER = "X-Webhook-Signature"

EventPublisher = Callable[[TransactionEvent], Awaitable[None]]
FieldsSpec = Union[Mapping[str, Any], Callable[[Transaction], Optional[Mapping[str, Any]]], None]


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookReconciliation:
    transaction: Transaction
    outcome: ApplyOutcome
    event: Optional[WebhookEvent] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _refund_idempotency_key(reference_number: str, reservation_version: int) -> str:
    # One key per reservation: the record version after the refund amount was reserved
    base = f"refund|{reference_number}|{reservation_version}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class PaymentOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        repository: TransactionRepository,
        verifier: WebhookVerifier,
        *,
        provider_call_seconds: float = 10.0,
        request_timeout_seconds: Optional[float] = None,
        publisher: Optional[EventPublisher] = None,
        max_apply_attempts: int = 5,
    ) -> None:
        self._registry = registry
        self._repo = repository
        self._verifier = verifier
        self._provider_call_seconds = provider_call_seconds
        # 面向调用方的总时限；超时后渠道调用在后台继续并落库
        self._request_timeout_seconds = request_timeout_seconds
        self._publisher = publisher
        self._max_apply_attempts = max_apply_attempts
        # reference_number -> in-flight charge task
        self._inflight: dict[str, asyncio.Task] = {}
        self._inflight_refunds: set[asyncio.Task] = set()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # ------------------------------------------------------------------ reads

    async def get(self, reference_number: str) -> Transaction:
        tx = await self._repo.get_by_reference(reference_number)
        if tx is None:
            raise TransactionNotFoundError(reference_number)
        return tx

    async def list_for_user(self, user_id: str, status: Optional[TransactionStatus] = None) -> list[Transaction]:
        return await self._repo.list_by_user(user_id, status)

    async def search(
        self,
        *,
        statuses: Optional[Iterable[TransactionStatus]] = None,
        provider: Optional[ProviderName] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Transaction]:
        return await self._repo.search(
            statuses=statuses,
            provider=provider,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
        )

    async def recent(self, since: timedelta, limit: int = 100) -> list[Transaction]:
        return await self.search(created_after=_utcnow() - since, limit=limit)

    async def failed_since(self, since: timedelta, limit: int = 100) -> list[Transaction]:
        """近期失败、可供用户重试的交易"""
        return await self.search(statuses=[TransactionStatus.FAILED], created_after=_utcnow() - since, limit=limit)

    async def stuck(self, older_than: timedelta, limit: int = 100) -> list[Transaction]:
        """超过 older_than 仍未得出结论的交易，需要向渠道查询后人工对账"""
        return await self.search(
            statuses=[TransactionStatus.PENDING, TransactionStatus.PROCESSING],
            created_before=_utcnow() - older_than,
            limit=limit,
        )

    # ----------------------------------------------------------------- submit

    async def submit(self, cmd: ChargeCommand) -> Transaction:
        """Create a PENDING transaction and charge it through the resolved provider.

        Raises ProviderRejectedError (transaction FAILED) or
        ProviderIndeterminateError (transaction stays PENDING, carries the
        reference number for later reconciliation).
        """
        started = asyncio.get_running_loop().time()
        provider_name = cmd.provider or self._registry.default_provider()
        _, provider = self._registry.resolve(provider_name)
        provider_name = provider.provider_name()
        if not provider.supports(cmd.method):
            raise UnsupportedMethodError(provider_name.value, cmd.method.value)

        logger.info(
            "payment_submit_request",
            provider=provider_name.value,
            method=cmd.method.value,
            amount=str(cmd.amount),
            currency=cmd.currency,
            idempotency_key=cmd.idempotency_key,
        )

        tx: Optional[Transaction] = None
        if cmd.idempotency_key:
            tx = await self._repo.get_by_idempotency_key(cmd.idempotency_key)
        if tx is None:
            candidate = Transaction.open(
                user_id=cmd.user_id,
                provider=provider_name,
                method=cmd.method,
                amount=cmd.amount,
                currency=cmd.currency,
                description=cmd.description,
                idempotency_key=cmd.idempotency_key,
            )
            try:
                tx = await self._repo.create(candidate)
            except TransactionAlreadyExistsError:
                if not cmd.idempotency_key:
                    raise
                # 并发提交同一幂等键，以先写入者为准
                tx = await self._repo.get_by_idempotency_key(cmd.idempotency_key)
                if tx is None:
                    raise

        if tx.idempotency_key:
            self._ensure_same_request(tx, cmd, provider_name)
            if tx.status != TransactionStatus.PENDING or tx.provider_transaction_id:
                logger.info(
                    "payment_submit_replayed",
                    reference_number=tx.reference_number,
                    status=tx.status.value,
                )
                return tx

        request = ChargeRequest(
            reference_number=tx.reference_number,
            amount=tx.amount,
            currency=tx.currency,
            method=tx.method,
            instrument=cmd.instrument,
            description=cmd.description,
            customer=cmd.customer,
            billing_address=cmd.billing_address,
        )
        task = self._inflight.get(tx.reference_number)
        if task is None:
            task = asyncio.ensure_future(self._charge_and_apply(tx.reference_number, provider, request))
            self._inflight[tx.reference_number] = task
            task.add_done_callback(lambda t, ref=tx.reference_number: self._on_charge_done(ref, t))
        return await self._await_within_deadline(task, tx.reference_number, provider_name.value, started)

    def _on_charge_done(self, reference_number: str, task: asyncio.Task) -> None:
        if self._inflight.get(reference_number) is task:
            del self._inflight[reference_number]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "payment_charge_task_finished_with_error",
                reference_number=reference_number,
                error=type(task.exception()).__name__,
            )

    async def _await_within_deadline(
        self,
        task: asyncio.Task,
        reference_number: str,
        provider_name: str,
        started: float,
    ) -> Transaction:
        # 已发出的渠道调用不随调用方取消或超时而中断，结果总会落库
        if self._request_timeout_seconds is None:
            return await asyncio.shield(task)
        remaining = self._request_timeout_seconds - (asyncio.get_running_loop().time() - started)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=max(remaining, 0))
        except asyncio.TimeoutError:
            logger.warning(
                "payment_request_deadline_exceeded",
                reference_number=reference_number,
                provider=provider_name,
                timeout=self._request_timeout_seconds,
            )
            raise ProviderIndeterminateError(
                "Request deadline exceeded; the outcome will be recorded when the provider answers",
                provider=provider_name,
                reference_number=reference_number,
            )

    async def drain(self) -> None:
        """Wait for in-flight charges and refunds to settle (used on shutdown)."""
        tasks = [*self._inflight.values(), *self._inflight_refunds]
        if tasks:
            logger.info("payment_orchestrator_draining", inflight=len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    def _ensure_same_request(tx: Transaction, cmd: ChargeCommand, provider_name: ProviderName) -> None:
        if (
            tx.amount != cmd.amount
            or tx.currency != cmd.currency
            or tx.provider != provider_name
            or tx.method != cmd.method
        ):
            raise DomainValidationException(
                "Idempotency key was already used with different payment parameters",
                field="idempotency_key",
                details={"reference_number": tx.reference_number},
            )

    async def _charge_and_apply(
        self,
        reference_number: str,
        provider: PaymentProvider,
        request: ChargeRequest,
    ) -> Transaction:
        provider_name = provider.provider_name().value
        try:
            result: ChargeResult = await asyncio.wait_for(
                provider.charge(request), timeout=self._provider_call_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "payment_charge_timeout",
                reference_number=reference_number,
                provider=provider_name,
                timeout=self._provider_call_seconds,
            )
            raise ProviderIndeterminateError(
                "Provider did not answer in time; the payment outcome is pending",
                provider=provider_name,
                reference_number=reference_number,
            )
        except ProviderIndeterminateError as exc:
            logger.warning(
                "payment_charge_indeterminate",
                reference_number=reference_number,
                provider=provider_name,
                error=exc.message,
            )
            raise ProviderIndeterminateError(
                exc.message, provider=provider_name, reference_number=reference_number
            ) from exc
        except ProviderRejectedError as exc:
            await self._record_failure(reference_number, exc.message)
            logger.info(
                "payment_charge_rejected",
                reference_number=reference_number,
                provider=provider_name,
                provider_code=exc.provider_code,
                reason=exc.message,
            )
            raise ProviderRejectedError(
                exc.message,
                provider=provider_name,
                provider_code=exc.provider_code,
                reference_number=reference_number,
            ) from exc

        if result.status == TransactionStatus.FAILED:
            reason = result.failure_reason or result.provider_status or "declined"
            await self._record_failure(reference_number, reason, provider_transaction_id=result.provider_transaction_id)
            raise ProviderRejectedError(reason, provider=provider_name, reference_number=reference_number)

        fields: dict[str, Any] = {
            "provider_transaction_id": result.provider_transaction_id,
            "card_last_four": result.card_last_four or request.instrument.last_four,
            "card_brand": result.card_brand,
        }
        target = result.status
        if target is None or not can_transition(TransactionStatus.PENDING, target):
            # 状态未知：仅挂上渠道ID，保持 PENDING 等待 webhook
            pid = result.provider_transaction_id

            def attach(cur: Transaction) -> Optional[Mapping[str, Any]]:
                return None if cur.provider_transaction_id == pid else fields

            tx, outcome = await self._apply_status(
                reference_number, TransactionStatus.PENDING, attach, allow_same_status=True
            )
        else:
            if target == TransactionStatus.COMPLETED:
                fields["processed_at"] = _utcnow()
            tx, outcome = await self._apply_status(reference_number, target, fields)

        logger.info(
            "payment_charge_applied",
            reference_number=reference_number,
            provider=provider_name,
            provider_transaction_id=result.provider_transaction_id,
            provider_status=result.provider_status,
            status=tx.status.value,
            outcome=outcome.value,
        )
        return tx

    async def _record_failure(
        self,
        reference_number: str,
        reason: str,
        *,
        provider_transaction_id: Optional[str] = None,
    ) -> None:
        await self._apply_status(
            reference_number,
            TransactionStatus.FAILED,
            {
                "failure_reason": reason,
                "failed_at": _utcnow(),
                "provider_transaction_id": provider_transaction_id,
            },
        )

    # ---------------------------------------------------------- state machine

    async def _apply_status(
        self,
        reference_number: str,
        target: TransactionStatus,
        fields: FieldsSpec = None,
        *,
        allow_same_status: bool = False,
    ) -> tuple[Transaction, ApplyOutcome]:
        """Move a transaction to ``target`` via compare-and-set, re-reading on races.

        ``fields`` may be a callable of the freshly read transaction; returning
        None from it means there is nothing left to write.
        """
        for attempt in range(1, self._max_apply_attempts + 1):
            current = await self._repo.get_by_reference(reference_number)
            if current is None:
                raise TransactionNotFoundError(reference_number)

            if current.status == target and not allow_same_status:
                return current, ApplyOutcome.DUPLICATE
            if current.status != target and not current.can_transition_to(target):
                logger.info(
                    "transaction_transition_ignored",
                    reference_number=reference_number,
                    current=current.status.value,
                    target=target.value,
                )
                return current, ApplyOutcome.IGNORED

            resolved = fields(current) if callable(fields) else dict(fields or {})
            if resolved is None:
                return current, ApplyOutcome.DUPLICATE

            pid = resolved.get("provider_transaction_id")
            if pid and current.provider_transaction_id and current.provider_transaction_id != pid:
                logger.error(
                    "transaction_provider_id_conflict",
                    reference_number=reference_number,
                    stored=current.provider_transaction_id,
                    incoming=pid,
                )
                return current, ApplyOutcome.IGNORED

            try:
                updated = await self._repo.compare_and_transition(
                    reference_number,
                    current.status,
                    target,
                    resolved,
                    expected_version=current.version,
                )
            except StaleTransitionError:
                logger.debug(
                    "transaction_transition_retry",
                    reference_number=reference_number,
                    target=target.value,
                    attempt=attempt,
                )
                continue
            await self._publish(current, updated)
            return updated, ApplyOutcome.APPLIED

        raise StaleTransitionError(reference_number, expected=target.value)

    async def _publish(self, before: Transaction, after: Transaction) -> None:
        if self._publisher is None:
            return
        event = self._event_for(before, after)
        if event is None:
            return
        try:
            await self._publisher(event)
        except Exception:  # noqa: BLE001
            # 迁移已提交，事件投递失败只记录
            logger.exception(
                "transaction_event_publish_failed",
                reference_number=after.reference_number,
                event=type(event).__name__,
            )

    @staticmethod
    def _event_for(before: Transaction, after: Transaction) -> Optional[TransactionEvent]:
        common = {
            "reference_number": after.reference_number,
            "provider": after.provider.value,
            "provider_transaction_id": after.provider_transaction_id,
            "user_id": after.user_id,
        }
        if after.refunded_amount != before.refunded_amount:
            return TransactionRefunded(
                **common,
                amount=str(after.refunded_amount - before.refunded_amount),
                refunded_total=str(after.refunded_amount),
                fully_refunded=after.status == TransactionStatus.REFUNDED,
            )
        if after.status == before.status:
            return None
        if after.status == TransactionStatus.COMPLETED:
            return TransactionCompleted(**common, amount=str(after.amount), currency=after.currency)
        if after.status == TransactionStatus.FAILED:
            return TransactionFailed(**common, reason=after.failure_reason)
        if after.status == TransactionStatus.CANCELLED:
            return TransactionCancelled(**common)
        if after.status == TransactionStatus.DISPUTED:
            return TransactionDisputed(**common, amount=str(after.disputed_amount))
        return None

    # --------------------------------------------------------------- webhooks

    def webhook_signature_header(self, provider_name: "str | ProviderName") -> str:
        """HTTP header carrying the provider's webhook signature."""
        try:
            return self._verifier.signature_header_for(provider_name)
        except UnknownProviderError:
            return DEFAULT_SIGNATURE_HEADER

    async def reconcile_webhook(
        self,
        provider_name: "str | ProviderName",
        raw_body: bytes,
        signature: Optional[str],
    ) -> WebhookReconciliation:
        name = str(getattr(provider_name, "value", provider_name))
        if not self._verifier.verify(provider_name, raw_body, signature):
            logger.warning(
                "webhook_signature_invalid",
                provider=name,
                body_size=len(raw_body),
                has_signature=bool(signature),
            )
            raise InvalidSignatureError(name)

        event = self._verifier.parse(provider_name, raw_body, signature)

        tx: Optional[Transaction] = None
        if event.provider_transaction_id:
            tx = await self._repo.get_by_provider_transaction_id(event.provider_transaction_id)
        if tx is None and event.reference_number:
            tx = await self._repo.get_by_reference(event.reference_number)
        if (
            tx is None
            or tx.provider != event.provider
            or (
                event.provider_transaction_id
                and tx.provider_transaction_id
                and tx.provider_transaction_id != event.provider_transaction_id
            )
        ):
            logger.warning(
                "webhook_unknown_transaction",
                provider=name,
                provider_transaction_id=event.provider_transaction_id,
                reference_number=event.reference_number,
                event_id=event.event_id,
            )
            raise UnknownTransactionError(name, event.provider_transaction_id, event.reference_number)

        ignored = self._ignore_reason(tx, event)
        if ignored:
            logger.info(
                "webhook_ignored",
                provider=name,
                reference_number=tx.reference_number,
                provider_status=event.provider_status,
                reason=ignored,
                event_id=event.event_id,
            )
            return WebhookReconciliation(tx, ApplyOutcome.IGNORED, event)

        target = event.status
        received_at = _utcnow()
        raw_text = raw_body.decode("utf-8", errors="replace")

        def build(cur: Transaction) -> Mapping[str, Any]:
            fields: dict[str, Any] = {
                "webhook_received_at": received_at,
                "webhook_payload": raw_text,
                "provider_transaction_id": event.provider_transaction_id,
            }
            if target == TransactionStatus.COMPLETED:
                fields["processed_at"] = received_at
            elif target == TransactionStatus.FAILED:
                fields["failed_at"] = received_at
                fields["failure_reason"] = event.failure_reason or event.provider_status or "failed"
            elif target == TransactionStatus.REFUNDED:
                fields["refunded_at"] = received_at
                fields["refunded_amount"] = cur.amount
                fields["refund_pending_amount"] = Decimal("0")
            elif target == TransactionStatus.DISPUTED:
                fields["disputed_at"] = received_at
                fields["disputed_amount"] = event.amount if event.amount is not None else cur.amount
            return fields

        updated, outcome = await self._apply_status(tx.reference_number, target, build)
        logger.info(
            "webhook_reconciled",
            provider=name,
            reference_number=updated.reference_number,
            provider_status=event.provider_status,
            status=updated.status.value,
            outcome=outcome.value,
            event_id=event.event_id,
        )
        return WebhookReconciliation(updated, outcome, event)

    @staticmethod
    def _ignore_reason(tx: Transaction, event: WebhookEvent) -> Optional[str]:
        if event.status is None:
            return "unmapped_status"
        if event.status == TransactionStatus.PARTIALLY_REFUNDED:
            # 部分退款以本地 refund() 记账为准
            return "partial_refund_notification"
        if event.status == TransactionStatus.COMPLETED:
            if event.currency and event.currency != tx.currency:
                return "currency_mismatch"
            if event.amount is not None and event.amount != tx.amount:
                return "amount_mismatch"
        return None

    # ----------------------------------------------------------------- refund

    @staticmethod
    def _check_refundable(tx: Transaction, amount: Decimal) -> None:
        if tx.status not in (TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED):
            raise NotRefundableError(tx.reference_number, tx.status.value)
        refundable = tx.refundable_amount()
        if amount > refundable:
            raise ExcessiveRefundError(tx.reference_number, amount, refundable)

    async def refund(self, reference_number: str, amount: Decimal, reason: Optional[str] = None) -> Transaction:
        """Refund ``amount`` of a settled transaction.

        The amount is reserved on the record (refund_pending_amount) before the
        provider is called, so concurrent refunds can never overshoot and each
        reservation gets its own provider idempotency key.
        """
        started = asyncio.get_running_loop().time()
        amount = validate_amount(Decimal(str(amount)))
        tx = await self.get(reference_number)
        self._check_refundable(tx, amount)
        if not tx.provider_transaction_id:
            raise NotRefundableError(tx.reference_number, tx.status.value)
        _, provider = self._registry.resolve(tx.provider)

        reserved = await self._reserve_refund(reference_number, amount)
        request = RefundRequest(
            reference_number=reserved.reference_number,
            provider_transaction_id=reserved.provider_transaction_id,
            amount=amount,
            currency=reserved.currency,
            reason=reason,
            idempotency_key=_refund_idempotency_key(reserved.reference_number, reserved.version),
        )
        logger.info(
            "payment_refund_request",
            reference_number=reference_number,
            provider=reserved.provider.value,
            amount=str(amount),
            refunded_before=str(reserved.refunded_amount),
            pending=str(reserved.refund_pending_amount),
        )
        task = asyncio.ensure_future(self._refund_and_settle(reference_number, provider, request))
        self._inflight_refunds.add(task)
        task.add_done_callback(self._on_refund_done)
        return await self._await_within_deadline(task, reference_number, reserved.provider.value, started)

    def _on_refund_done(self, task: asyncio.Task) -> None:
        self._inflight_refunds.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("payment_refund_task_finished_with_error", error=type(task.exception()).__name__)

    async def _reserve_refund(self, reference_number: str, amount: Decimal) -> Transaction:
        for attempt in range(1, self._max_apply_attempts + 1):
            current = await self.get(reference_number)
            self._check_refundable(current, amount)
            try:
                return await self._repo.compare_and_transition(
                    reference_number,
                    current.status,
                    current.status,
                    {
                        "refunded_amount": current.refunded_amount,
                        "refund_pending_amount": current.refund_pending_amount + amount,
                    },
                    expected_version=current.version,
                )
            except StaleTransitionError:
                logger.debug("payment_refund_reserve_retry", reference_number=reference_number, attempt=attempt)
        raise StaleTransitionError(reference_number)

    async def _refund_and_settle(
        self,
        reference_number: str,
        provider: PaymentProvider,
        request: RefundRequest,
    ) -> Transaction:
        provider_name = provider.provider_name().value
        try:
            result = await asyncio.wait_for(provider.refund(request), timeout=self._provider_call_seconds)
        except asyncio.TimeoutError:
            # 结果未知：保留预留额度，等待退款 webhook 或人工对账
            logger.warning(
                "payment_refund_timeout",
                reference_number=reference_number,
                provider=provider_name,
                amount=str(request.amount),
            )
            raise ProviderIndeterminateError(
                "Provider did not answer the refund in time",
                provider=provider_name,
                reference_number=reference_number,
            )
        except ProviderIndeterminateError as exc:
            logger.warning(
                "payment_refund_indeterminate",
                reference_number=reference_number,
                provider=provider_name,
                amount=str(request.amount),
                error=exc.message,
            )
            raise ProviderIndeterminateError(
                exc.message, provider=provider_name, reference_number=reference_number
            ) from exc
        except ProviderRejectedError:
            await self._release_refund(reference_number, request.amount)
            raise

        updated = await self._settle_refund(reference_number, request.amount)
        logger.info(
            "payment_refund_applied",
            reference_number=reference_number,
            provider_refund_id=result.provider_refund_id,
            refunded_amount=str(updated.refunded_amount),
            status=updated.status.value,
        )
        return updated

    async def _settle_refund(self, reference_number: str, amount: Decimal) -> Transaction:
        """渠道已确认退款：把预留额度记入已退金额"""
        refunded_at = _utcnow()
        for attempt in range(1, self._max_apply_attempts + 1):
            current = await self.get(reference_number)
            pending = max(current.refund_pending_amount - amount, Decimal("0"))
            if current.status == TransactionStatus.REFUNDED:
                # 全额退款 webhook 先到，已退金额已记满
                refunded = current.refunded_amount
                target = TransactionStatus.REFUNDED
            else:
                refunded = min(current.refunded_amount + amount, current.amount)
                target = current.status
                if current.status in (TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED):
                    target = (
                        TransactionStatus.REFUNDED
                        if refunded >= current.amount
                        else TransactionStatus.PARTIALLY_REFUNDED
                    )
            try:
                updated = await self._repo.compare_and_transition(
                    reference_number,
                    current.status,
                    target,
                    {"refunded_amount": refunded, "refund_pending_amount": pending, "refunded_at": refunded_at},
                    expected_version=current.version,
                )
            except StaleTransitionError:
                logger.debug("payment_refund_retry", reference_number=reference_number, attempt=attempt)
                continue
            await self._publish(current, updated)
            return updated
        raise StaleTransitionError(reference_number)

    async def _release_refund(self, reference_number: str, amount: Decimal) -> Transaction:
        for attempt in range(1, self._max_apply_attempts + 1):
            current = await self.get(reference_number)
            try:
                return await self._repo.compare_and_transition(
                    reference_number,
                    current.status,
                    current.status,
                    {
                        "refunded_amount": current.refunded_amount,
                        "refund_pending_amount": max(current.refund_pending_amount - amount, Decimal("0")),
                    },
                    expected_version=current.version,
                )
            except StaleTransitionError:
                logger.debug("payment_refund_release_retry", reference_number=reference_number, attempt=attempt)
        raise StaleTransitionError(reference_number)
