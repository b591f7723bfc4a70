"""
支付领域异常

所有异常均继承 BusinessException，由 core.exceptions 统一映射为 HTTP 响应。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class UnknownProviderError(BusinessException):
    """未注册的支付渠道"""

    def __init__(self, provider: Optional[str]):
        super().__init__(
            code=PaymentCode.PROVIDER_NOT_FOUND,
            message=f"Unknown payment provider: {provider}",
            error_type="UnknownProvider",
            details={"provider": provider},
            field="provider",
        )
        self.provider = provider


class ProviderRejectedError(BusinessException):
    """渠道明确拒绝（终态，不可重试）"""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        provider_code: Optional[str] = None,
        reference_number: Optional[str] = None,
    ):
        super().__init__(
            code=PaymentCode.PROVIDER_REJECTED,
            message=message,
            error_type="ProviderRejected",
            details={
                "provider": provider,
                "provider_code": provider_code,
                "reference_number": reference_number,
            },
        )
        self.provider = provider
        self.provider_code = provider_code
        self.reference_number = reference_number


class ProviderIndeterminateError(BusinessException):
    """渠道结果未知（超时 / 5xx / 网络中断），交易保持 PENDING，等待 webhook 对账"""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        reference_number: Optional[str] = None,
    ):
        super().__init__(
            code=PaymentCode.PROVIDER_RECOVERABLE,
            message=message,
            error_type="ProviderIndeterminate",
            details={"provider": provider, "reference_number": reference_number},
        )
        self.provider = provider
        self.reference_number = reference_number


class InvalidSignatureError(BusinessException):
    def __init__(self, provider: Optional[str]):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message="Invalid webhook signature",
            error_type="InvalidSignature",
            details={"provider": provider},
        )
        self.provider = provider


class WebhookParseError(BusinessException):
    def __init__(self, message: str, *, provider: Optional[str] = None, code: int = PaymentCode.WEBHOOK_PARSE_ERROR):
        super().__init__(
            code=code,
            message=message,
            error_type="WebhookParseError",
            details={"provider": provider},
        )
        self.provider = provider


class WebhookExpiredError(WebhookParseError):
    """事件时间戳不在允许窗口内（疑似重放）"""

    def __init__(self, *, provider: Optional[str] = None, occurred_at: Optional[str] = None):
        super().__init__(
            f"Webhook timestamp outside the accepted window: {occurred_at}",
            provider=provider,
            code=PaymentCode.WEBHOOK_EXPIRED,
        )
        self.error_type = "WebhookExpired"


class UnknownTransactionError(BusinessException):
    def __init__(self, provider: Optional[str], provider_transaction_id: Optional[str], reference_number: Optional[str] = None):
        super().__init__(
            code=PaymentCode.UNKNOWN_TRANSACTION,
            message="Webhook refers to an unknown transaction",
            error_type="UnknownTransaction",
            details={
                "provider": provider,
                "provider_transaction_id": provider_transaction_id,
                "reference_number": reference_number,
            },
        )


class TransactionNotFoundError(BusinessException):
    def __init__(self, reference_number: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_NOT_FOUND,
            message=f"Transaction not found: {reference_number}",
            error_type="TransactionNotFound",
            details={"reference_number": reference_number},
        )
        self.reference_number = reference_number


class TransactionAlreadyExistsError(BusinessException):
    def __init__(self, reference_number: Optional[str] = None, *, idempotency_key: Optional[str] = None):
        super().__init__(
            code=PaymentCode.TRANSACTION_ALREADY_EXISTS,
            message="Transaction already exists",
            error_type="TransactionAlreadyExists",
            details={"reference_number": reference_number, "idempotency_key": idempotency_key},
        )
        self.reference_number = reference_number
        self.idempotency_key = idempotency_key


class StaleTransitionError(BusinessException):
    """乐观并发冲突：存储中的状态/版本已被其他写入者修改"""

    def __init__(self, reference_number: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(
            code=PaymentCode.STALE_TRANSITION,
            message=f"Transaction {reference_number} changed concurrently",
            error_type="StaleTransition",
            details={"reference_number": reference_number, "expected": expected, "actual": actual},
        )
        self.reference_number = reference_number
        self.expected = expected
        self.actual = actual


class InvalidTransitionError(BusinessException):
    def __init__(self, reference_number: str, current: str, target: str):
        super().__init__(
            code=PaymentCode.INVALID_TRANSITION,
            message=f"Transition {current} -> {target} is not allowed",
            error_type="InvalidTransition",
            details={"reference_number": reference_number, "current": current, "target": target},
        )


class NotRefundableError(BusinessException):
    def __init__(self, reference_number: str, status: str):
        super().__init__(
            code=PaymentCode.NOT_REFUNDABLE,
            message=f"Transaction in status {status} cannot be refunded",
            error_type="NotRefundable",
            details={"reference_number": reference_number, "status": status},
        )


class ExcessiveRefundError(BusinessException):
    def __init__(self, reference_number: str, requested: Decimal, refundable: Decimal):
        super().__init__(
            code=PaymentCode.EXCESSIVE_REFUND,
            message=f"Refund amount {requested} exceeds refundable amount {refundable}",
            error_type="ExcessiveRefund",
            details={
                "reference_number": reference_number,
                "requested": str(requested),
                "refundable": str(refundable),
            },
            field="amount",
        )
        self.requested = requested
        self.refundable = refundable


class UnsupportedMethodError(BusinessException):
    def __init__(self, provider: str, method: str):
        super().__init__(
            code=PaymentCode.UNSUPPORTED_METHOD,
            message=f"Provider {provider} does not support payment method {method}",
            error_type="UnsupportedMethod",
            details={"provider": provider, "method": method},
            field="method",
        )
