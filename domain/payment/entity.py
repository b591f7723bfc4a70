"""
支付领域实体 - 交易聚合根与状态机
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException


class TransactionStatus(str, Enum):
    """交易状态枚举"""
    PENDING = "pending"                        # 已创建，等待渠道结果
    PROCESSING = "processing"                  # 渠道处理中
    COMPLETED = "completed"                    # 支付成功
    FAILED = "failed"                          # 支付失败（终态）
    CANCELLED = "cancelled"                    # 已取消（终态）
    REFUNDED = "refunded"                      # 全额退款（终态）
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款
    DISPUTED = "disputed"                      # 争议/拒付


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    DIGITAL_WALLET = "digital_wallet"
    CRYPTOCURRENCY = "cryptocurrency"


class ProviderName(str, Enum):
    IYZILINK = "iyzilink"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    SQUARE = "square"

    @classmethod
    def parse(cls, value: "str | ProviderName | None") -> "ProviderName":
        """大小写不敏感地解析渠道名；未知名称抛出 ValueError"""
        if isinstance(value, ProviderName):
            return value
        if value is None:
            raise ValueError("provider name is required")
        return cls(str(value).strip().lower())


ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.PROCESSING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.COMPLETED: frozenset({
        TransactionStatus.PARTIALLY_REFUNDED,
        TransactionStatus.REFUNDED,
        TransactionStatus.DISPUTED,
    }),
    TransactionStatus.PARTIALLY_REFUNDED: frozenset({
        TransactionStatus.REFUNDED,
        TransactionStatus.DISPUTED,
    }),
    # DISPUTED 只能由人工处理流程离开
    TransactionStatus.DISPUTED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
})

REFUNDABLE_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.PARTIALLY_REFUNDED,
})

_CENT = Decimal("0.01")


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def generate_reference_number() -> str:
    """生成交易参考号：PAY- + 16 位大写十六进制"""
    return "PAY-" + uuid.uuid4().hex[:16].upper()


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_amount(amount: Decimal, *, field_name: str = "amount") -> Decimal:
    """金额必须为正数且最多两位小数"""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    if not amount.is_finite() or amount <= 0:
        raise DomainValidationException(f"Amount must be positive: {amount}", field=field_name)
    if amount != amount.quantize(_CENT):
        raise DomainValidationException(
            f"Amount must have at most two decimal places: {amount}", field=field_name
        )
    return amount


def validate_currency(currency: Optional[str]) -> str:
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise DomainValidationException(f"Invalid currency code: {currency}", field="currency")
    return currency.upper()


@dataclass
class Transaction:
    """
    交易聚合根 - 记录一次支付在各渠道间的完整生命周期

    业务规则：
    1. reference_number 创建时生成，之后不可变
    2. 金额必须大于0，币种为 ISO-4217 三位字母
    3. 状态只能沿 ALLOWED_TRANSITIONS 中的边移动
    4. 退款总额不能超过交易金额
    5. provider_transaction_id 一旦写入不可被改为其他值

    状态/金额/渠道ID 的持久化只经由仓储的 compare_and_transition 完成，
    实体本身只负责校验与派生计算。
    """

    reference_number: str
    user_id: Optional[str]
    provider: ProviderName
    method: PaymentMethod
    amount: Decimal
    currency: str
    status: TransactionStatus = TransactionStatus.PENDING

    provider_transaction_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: Optional[str] = None

    # 金额累计
    refunded_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    disputed_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    # 已向渠道发起、尚未确认的退款额度
    refund_pending_amount: Decimal = field(default_factory=lambda: Decimal("0"))

    # 卡信息（仅后四位与品牌）
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None

    failure_reason: Optional[str] = None
    webhook_payload: Optional[str] = None

    # 时间戳（除 updated_at 外均只写一次）
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    webhook_received_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None

    version: int = 1
    id: Optional[int] = None

    def __post_init__(self):
        self.provider = ProviderName.parse(self.provider)
        self.method = PaymentMethod(self.method)
        self.status = TransactionStatus(self.status)
        self.amount = validate_amount(self.amount)
        self.currency = validate_currency(self.currency)
        self.refunded_amount = Decimal(str(self.refunded_amount or 0))
        self.disputed_amount = Decimal(str(self.disputed_amount or 0))
        self.refund_pending_amount = Decimal(str(self.refund_pending_amount or 0))
        if self.refunded_amount < 0 or self.refunded_amount > self.amount:
            raise DomainValidationException(
                f"Refunded amount {self.refunded_amount} outside [0, {self.amount}]",
                field="refunded_amount",
            )
        if self.refund_pending_amount < 0 or self.refunded_amount + self.refund_pending_amount > self.amount:
            raise DomainValidationException(
                f"Pending refund {self.refund_pending_amount} exceeds the unrefunded amount",
                field="refund_pending_amount",
            )
        if self.disputed_amount < 0:
            raise DomainValidationException(
                f"Disputed amount must not be negative: {self.disputed_amount}",
                field="disputed_amount",
            )
        self._normalize_timestamps()

    @classmethod
    def open(
        cls,
        *,
        user_id: Optional[str],
        provider: ProviderName | str,
        method: PaymentMethod | str,
        amount: Decimal,
        currency: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> "Transaction":
        """新建 PENDING 交易"""
        now = datetime.now(timezone.utc)
        return cls(
            reference_number=generate_reference_number(),
            user_id=user_id,
            provider=provider,
            method=method,
            amount=amount,
            currency=currency,
            status=TransactionStatus.PENDING,
            description=description,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )

    def _normalize_timestamps(self) -> None:
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.processed_at = _ensure_utc(self.processed_at)
        self.failed_at = _ensure_utc(self.failed_at)
        self.webhook_received_at = _ensure_utc(self.webhook_received_at)
        self.refunded_at = _ensure_utc(self.refunded_at)
        self.disputed_at = _ensure_utc(self.disputed_at)

    def can_transition_to(self, target: TransactionStatus) -> bool:
        return can_transition(self.status, target)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_refund(self) -> bool:
        return self.status in REFUNDABLE_STATUSES and self.refundable_amount() > 0

    def refundable_amount(self) -> Decimal:
        """未退且未被在途退款占用的额度"""
        return self.amount - self.refunded_amount - self.refund_pending_amount

    def net_amount(self) -> Decimal:
        """扣除退款与争议后的净额；两者独立累计"""
        return self.amount - self.refunded_amount - self.disputed_amount
