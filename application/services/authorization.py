"""
Ownership checks for transaction reads and writes.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import PermissionDeniedException
from domain.payment.entity import Transaction


def ensure_owner(transaction: Transaction, user_id: Optional[str], *, is_admin: bool = False) -> Transaction:
    """Admins see everything; everyone else only their own transactions."""
    if is_admin:
        return transaction
    if not user_id or transaction.user_id is None or str(transaction.user_id) != str(user_id):
        raise PermissionDeniedException(
            "You are not allowed to access this transaction",
            details={"reference_number": transaction.reference_number},
        )
    return transaction


def ensure_admin(is_admin: bool) -> None:
    if not is_admin:
        raise PermissionDeniedException("Administrator role required")
