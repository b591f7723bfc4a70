"""
交易数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, Numeric, String, Text

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionModel(Base):
    """
    交易数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Transaction 中
    """
    __tablename__ = "payment_transactions"

    # 主键
    id = Column(Integer, primary_key=True, autoincrement=True)

    # 标识
    reference_number = Column(String(32), unique=True, nullable=False, comment="交易参考号 PAY-XXXXXXXXXXXXXXXX")
    provider_transaction_id = Column(String(200), unique=True, nullable=True, comment="渠道交易ID")
    idempotency_key = Column(String(200), unique=True, nullable=True, comment="调用方幂等键")
    user_id = Column(String(100), nullable=True, index=True, comment="用户ID")

    # 渠道与方式
    provider = Column(String(50), nullable=False, index=True, comment="支付渠道: iyzilink/stripe/paypal/square")
    method = Column(String(50), nullable=False, comment="支付方式")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="交易金额")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")
    refunded_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="已退款金额")
    disputed_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="争议金额")
    refund_pending_amount = Column(
        Numeric(precision=15, scale=2), nullable=False, default=0, comment="已发往渠道、尚未确认的退款金额"
    )

    # 状态
    status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="pending/processing/completed/failed/cancelled/refunded/partially_refunded/disputed",
    )

    # 卡信息
    card_last_four = Column(String(4), nullable=True)
    card_brand = Column(String(50), nullable=True)

    description = Column(String(500), nullable=True)
    failure_reason = Column(Text, nullable=True, comment="失败原因")
    webhook_payload = Column(Text, nullable=True, comment="最近一次生效的 webhook 原文")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="更新时间")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    failed_at = Column(DateTime(timezone=True), nullable=True, comment="失败时间")
    webhook_received_at = Column(DateTime(timezone=True), nullable=True, comment="首个生效 webhook 时间")
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="首次退款时间")
    disputed_at = Column(DateTime(timezone=True), nullable=True, comment="争议时间")

    # 乐观锁版本号
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_payment_transactions_user_status", "user_id", "status"),
        Index("ix_payment_transactions_created_at", "created_at"),
        Index("ix_payment_transactions_status_created_at", "status", "created_at"),
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("refunded_amount >= 0 AND refunded_amount <= amount", name="refund_within_amount"),
        CheckConstraint("refund_pending_amount >= 0", name="refund_pending_non_negative"),
    )

    def __repr__(self):
        return (
            f"<TransactionModel(id={self.id}, reference_number='{self.reference_number}', "
            f"provider='{self.provider}', amount={self.amount}, status='{self.status}')>"
        )
