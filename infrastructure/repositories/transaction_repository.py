"""
交易仓储实现 - 使用SQLAlchemy实现数据访问

每个操作使用独立会话与事务；状态迁移通过单条条件 UPDATE 完成，
并发写入者之间由数据库行锁线性化。
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy import and_, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.logging_config import get_logger
from domain.payment.entity import ProviderName, Transaction, TransactionStatus, can_transition
from domain.payment.exceptions import (
    InvalidTransitionError,
    StaleTransitionError,
    TransactionAlreadyExistsError,
    TransactionNotFoundError,
)
from domain.payment.repository import TransactionRepository
from infrastructure.models.transaction import TransactionModel


logger = get_logger(__name__)

# 只写一次的字段：已有值时保留原值
_WRITE_ONCE_FIELDS = frozenset({
    "processed_at",
    "failed_at",
    "webhook_received_at",
    "refunded_at",
    "disputed_at",
    "card_last_four",
    "card_brand",
})

# 可随迁移覆盖写入的字段
_MUTABLE_FIELDS = frozenset({
    "refunded_amount",
    "refund_pending_amount",
    "disputed_amount",
    "failure_reason",
    "webhook_payload",
})

TRANSITION_FIELDS = _WRITE_ONCE_FIELDS | _MUTABLE_FIELDS | {"provider_transaction_id"}


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def _to_entity(self, model: TransactionModel) -> Transaction:
        """将数据库模型转换为领域实体"""
        return Transaction(
            id=model.id,
            reference_number=model.reference_number,
            user_id=model.user_id,
            provider=model.provider,
            method=model.method,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=TransactionStatus(model.status),
            provider_transaction_id=model.provider_transaction_id,
            idempotency_key=model.idempotency_key,
            description=model.description,
            refunded_amount=Decimal(str(model.refunded_amount or 0)),
            disputed_amount=Decimal(str(model.disputed_amount or 0)),
            refund_pending_amount=Decimal(str(model.refund_pending_amount or 0)),
            card_last_four=model.card_last_four,
            card_brand=model.card_brand,
            failure_reason=model.failure_reason,
            webhook_payload=model.webhook_payload,
            created_at=model.created_at,
            updated_at=model.updated_at,
            processed_at=model.processed_at,
            failed_at=model.failed_at,
            webhook_received_at=model.webhook_received_at,
            refunded_at=model.refunded_at,
            disputed_at=model.disputed_at,
            version=model.version,
        )

    def _to_model(self, entity: Transaction) -> TransactionModel:
        """将领域实体转换为数据库模型"""
        return TransactionModel(
            reference_number=entity.reference_number,
            user_id=entity.user_id,
            provider=entity.provider.value,
            method=entity.method.value,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            provider_transaction_id=entity.provider_transaction_id,
            idempotency_key=entity.idempotency_key,
            description=entity.description,
            refunded_amount=entity.refunded_amount,
            disputed_amount=entity.disputed_amount,
            refund_pending_amount=entity.refund_pending_amount,
            card_last_four=entity.card_last_four,
            card_brand=entity.card_brand,
            failure_reason=entity.failure_reason,
            webhook_payload=entity.webhook_payload,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            processed_at=entity.processed_at,
            failed_at=entity.failed_at,
            webhook_received_at=entity.webhook_received_at,
            refunded_at=entity.refunded_at,
            disputed_at=entity.disputed_at,
            version=entity.version,
        )

    async def create(self, transaction: Transaction) -> Transaction:
        """创建交易记录"""
        try:
            async with self._session_factory() as session, session.begin():
                db_tx = self._to_model(transaction)
                session.add(db_tx)
                await session.flush()
                await session.refresh(db_tx)
                created = self._to_entity(db_tx)
        except IntegrityError:
            logger.warning(
                "transaction_create_conflict",
                reference_number=transaction.reference_number,
                idempotency_key=transaction.idempotency_key,
            )
            raise TransactionAlreadyExistsError(
                transaction.reference_number, idempotency_key=transaction.idempotency_key
            )
        logger.info(
            "transaction_created",
            reference_number=created.reference_number,
            provider=created.provider.value,
            amount=str(created.amount),
            currency=created.currency,
        )
        return created

    async def _get_one(self, *criteria) -> Optional[Transaction]:
        async with self._session_factory() as session:
            result = await session.execute(select(TransactionModel).where(*criteria))
            db_tx = result.scalar_one_or_none()
            return self._to_entity(db_tx) if db_tx else None

    async def get_by_reference(self, reference_number: str) -> Optional[Transaction]:
        return await self._get_one(TransactionModel.reference_number == reference_number)

    async def get_by_provider_transaction_id(self, provider_transaction_id: str) -> Optional[Transaction]:
        return await self._get_one(TransactionModel.provider_transaction_id == provider_transaction_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        return await self._get_one(TransactionModel.idempotency_key == idempotency_key)

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[TransactionStatus] = None,
    ) -> List[Transaction]:
        query = select(TransactionModel).where(TransactionModel.user_id == user_id)
        if status:
            query = query.where(TransactionModel.status == status.value)
        query = query.order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_entity(m) for m in result.scalars().all()]

    async def search(
        self,
        *,
        statuses: Optional[Iterable[TransactionStatus]] = None,
        provider: Optional[ProviderName] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        query = select(TransactionModel)
        if statuses:
            query = query.where(TransactionModel.status.in_([s.value for s in statuses]))
        if provider:
            query = query.where(TransactionModel.provider == provider.value)
        if created_after is not None:
            query = query.where(TransactionModel.created_at >= created_after)
        if created_before is not None:
            query = query.where(TransactionModel.created_at < created_before)
        query = query.order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_entity(m) for m in result.scalars().all()]

    def _build_values(self, fields: Mapping[str, Any]) -> tuple[dict, list]:
        """把迁移附带字段翻译为 UPDATE 的 SET 子句与额外的 WHERE 守卫"""
        values: dict[str, Any] = {}
        guards: list = []
        for name, value in fields.items():
            if name not in TRANSITION_FIELDS:
                raise ValueError(f"Field {name!r} cannot be written through a transition")
            column = getattr(TransactionModel, name)
            if name == "provider_transaction_id":
                if value is None:
                    continue
                # 已有渠道ID时只允许相同值
                guards.append(or_(column.is_(None), column == value))
                values[name] = value
            elif name in _WRITE_ONCE_FIELDS:
                if value is None:
                    continue
                values[name] = func.coalesce(column, literal(value, type_=column.type))
            else:
                values[name] = value
        refund_guard = self._refund_guard(fields)
        if refund_guard is not None:
            guards.append(refund_guard)
        return values, guards

    @staticmethod
    def _refund_guard(fields: Mapping[str, Any]):
        """已退 + 在途退款不得超过交易金额；两者都给出时在 Python 侧求和，避免 SQLite 浮点误差"""
        refunded = fields.get("refunded_amount")
        pending = fields.get("refund_pending_amount")
        if refunded is None and pending is None:
            return None
        if refunded is not None and pending is not None:
            return TransactionModel.amount >= Decimal(refunded) + Decimal(pending)
        if pending is None:
            return TransactionModel.amount >= TransactionModel.refund_pending_amount + refunded
        return TransactionModel.amount >= TransactionModel.refunded_amount + pending

    async def compare_and_transition(
        self,
        reference_number: str,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
        fields: Optional[Mapping[str, Any]] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> Transaction:
        if new_status != expected_status and not can_transition(expected_status, new_status):
            raise InvalidTransitionError(reference_number, expected_status.value, new_status.value)
        values, guards = self._build_values(fields or {})
        values["status"] = new_status.value
        values["version"] = TransactionModel.version + 1
        values["updated_at"] = datetime.now(timezone.utc)

        conditions = [
            TransactionModel.reference_number == reference_number,
            TransactionModel.status == expected_status.value,
            *guards,
        ]
        if expected_version is not None:
            conditions.append(TransactionModel.version == expected_version)

        stmt = (
            update(TransactionModel)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                row = await session.execute(
                    select(TransactionModel).where(TransactionModel.reference_number == reference_number)
                )
                db_tx = row.scalar_one_or_none()
                if db_tx is None:
                    raise TransactionNotFoundError(reference_number)
                if result.rowcount == 0:
                    logger.info(
                        "transaction_transition_stale",
                        reference_number=reference_number,
                        expected=expected_status.value,
                        actual=db_tx.status,
                        expected_version=expected_version,
                        actual_version=db_tx.version,
                    )
                    raise StaleTransitionError(reference_number, expected_status.value, db_tx.status)
                updated = self._to_entity(db_tx)
        except IntegrityError:
            # provider_transaction_id 已被另一笔交易占用
            logger.warning(
                "transaction_transition_conflict",
                reference_number=reference_number,
                provider_transaction_id=(fields or {}).get("provider_transaction_id"),
            )
            raise TransactionAlreadyExistsError(reference_number)

        logger.info(
            "transaction_transitioned",
            reference_number=reference_number,
            from_status=expected_status.value,
            to_status=new_status.value,
            version=updated.version,
        )
        return updated
