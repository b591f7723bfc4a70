"""
Business codes carried in the ``code`` field of every API envelope.

``BusinessCode`` holds the generic request/caller/system outcomes;
payment outcomes (6xxxx) live in ``shared.codes.payment_codes.PaymentCode``.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    SUCCESS = 0

    # 请求参数 (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # 业务规则 (2xxxx)
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006
    CONFLICT = 20007

    # 调用方身份 (3xxxx)
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # 系统 (4xxxx)
    SYSTEM_ERROR = 40000
    DATABASE_ERROR = 40001
    SERVICE_UNAVAILABLE = 40003

    # 限流 (5xxxx)
    TOO_MANY_REQUESTS = 50001


__all__ = ["BusinessCode"]
