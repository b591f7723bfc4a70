"""
交易仓储接口 - 定义交易数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from .entity import ProviderName, Transaction, TransactionStatus


class TransactionRepository(ABC):
    """交易仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        """创建交易记录；唯一键冲突抛出 TransactionAlreadyExistsError"""

    @abstractmethod
    async def get_by_reference(self, reference_number: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_by_provider_transaction_id(self, provider_transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_by_user(
        self,
        user_id: str,
        status: Optional[TransactionStatus] = None,
    ) -> List[Transaction]:
        """获取用户的交易列表（按创建时间倒序）"""

    @abstractmethod
    async def search(
        self,
        *,
        statuses: Optional[Iterable[TransactionStatus]] = None,
        provider: Optional[ProviderName] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        """按状态、渠道与创建时间窗口查询（按创建时间倒序，最多 limit 条）"""

    @abstractmethod
    async def compare_and_transition(
        self,
        reference_number: str,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
        fields: Optional[Mapping[str, Any]] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> Transaction:
        """
        原子地把交易从 expected_status 迁移到 new_status 并写入附带字段。

        这是 status / provider_transaction_id / refunded_amount / disputed_amount
        唯一的写入路径。存储中的状态（或版本）与期望不一致时抛出
        StaleTransitionError；记录不存在时抛出 TransactionNotFoundError。
        """
