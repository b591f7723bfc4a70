"""
Payment specific codes and provider status mapping.

Internal statuses are the lowercase values of
``domain.payment.entity.TransactionStatus``; this module stays free of
domain imports so adapters and parsers can share it.
"""
from __future__ import annotations

from enum import IntEnum
from typing import Optional


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    PROVIDER_NOT_FOUND = 60005
    PROVIDER_REJECTED = 60006
    WEBHOOK_PARSE_ERROR = 60007
    WEBHOOK_EXPIRED = 60008
    UNKNOWN_TRANSACTION = 60009

    # Transaction lifecycle errors (61xxx)
    TRANSACTION_NOT_FOUND = 61000
    TRANSACTION_ALREADY_EXISTS = 61001
    STALE_TRANSITION = 61002
    INVALID_TRANSITION = 61003
    NOT_REFUNDABLE = 61004
    EXCESSIVE_REFUND = 61005
    UNSUPPORTED_METHOD = 61006


# Keys are upper-cased native statuses
GENERIC_STATUS_TO_INTERNAL = {
    "SUCCESS": "completed",
    "SUCCEEDED": "completed",
    "COMPLETED": "completed",
    "PAID": "completed",
    "FAILED": "failed",
    "FAILURE": "failed",
    "ERROR": "failed",
    "CANCELLED": "cancelled",
    "CANCELED": "cancelled",
    "PENDING": "processing",
    "PROCESSING": "processing",
    "REFUNDED": "refunded",
    "PARTIALLY_REFUNDED": "partially_refunded",
    "DISPUTED": "disputed",
}

PROVIDER_STATUS_TO_INTERNAL = {
    "iyzilink": {
        "SUCCESS": "completed",
        "FAILURE": "failed",
        "INIT_THREEDS": "processing",
        "CALLBACK_THREEDS": "processing",
        "BKM_POS_SELECTED": "processing",
        "REFUND": "refunded",
        "CHARGEBACK": "disputed",
    },
    "stripe": {
        "SUCCEEDED": "completed",
        "PROCESSING": "processing",
        "REQUIRES_CAPTURE": "processing",
        "REQUIRES_ACTION": "pending",
        "REQUIRES_CONFIRMATION": "pending",
        "REQUIRES_PAYMENT_METHOD": "failed",
        "CANCELED": "cancelled",
        # dispute statuses
        "WARNING_NEEDS_RESPONSE": "disputed",
        "WARNING_UNDER_REVIEW": "disputed",
        "NEEDS_RESPONSE": "disputed",
        "UNDER_REVIEW": "disputed",
        "LOST": "disputed",
    },
    "paypal": {
        "COMPLETED": "completed",
        "APPROVED": "completed",
        "CREATED": "pending",
        "SAVED": "pending",
        "PAYER_ACTION_REQUIRED": "pending",
        "PENDING": "processing",
        "DECLINED": "failed",
        "DENIED": "failed",
        "FAILED": "failed",
        "VOIDED": "cancelled",
        "REFUNDED": "refunded",
        "PARTIALLY_REFUNDED": "partially_refunded",
        "REVERSED": "disputed",
    },
    "square": {
        "COMPLETED": "completed",
        "APPROVED": "processing",
        "PENDING": "processing",
        "FAILED": "failed",
        "CANCELED": "cancelled",
    },
}


def normalize_status(provider: str, native: Optional[str]) -> Optional[str]:
    """Map a provider-native status to an internal status value.

    Returns ``None`` for unknown strings; callers must not guess.
    """
    if native is None:
        return None
    key = str(native).strip().upper()
    if not key:
        return None
    mapping = PROVIDER_STATUS_TO_INTERNAL.get((provider or "").lower(), {})
    return mapping.get(key) or GENERIC_STATUS_TO_INTERNAL.get(key)


__all__ = [
    "PaymentCode",
    "GENERIC_STATUS_TO_INTERNAL",
    "PROVIDER_STATUS_TO_INTERNAL",
    "normalize_status",
]
