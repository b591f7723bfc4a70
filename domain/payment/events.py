"""
Transaction domain events.

Dataclass events record transaction lifecycle facts for downstream handling
(balance updates, inventory release, notifications). Domain remains free of
infrastructure imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass
class TransactionEvent:
    reference_number: str
    provider: str
    provider_transaction_id: Optional[str] = None
    user_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TransactionCompleted(TransactionEvent):
    amount: str = ""
    currency: str = ""


@dataclass
class TransactionFailed(TransactionEvent):
    reason: Optional[str] = None


@dataclass
class TransactionCancelled(TransactionEvent):
    pass


@dataclass
class TransactionRefunded(TransactionEvent):
    amount: str = ""
    refunded_total: str = ""
    fully_refunded: bool = False


@dataclass
class TransactionDisputed(TransactionEvent):
    amount: str = ""
