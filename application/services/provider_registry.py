"""
Provider registry: maps a provider name to its configuration and adapter.

Populated once at start-up and then frozen; lookups are read-only and need
no locking.
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_provider import PaymentProvider
from core.logging_config import get_logger
from core.settings import ProviderConfig
from domain.payment.entity import ProviderName
from domain.payment.exceptions import UnknownProviderError


logger = get_logger(__name__)


class ProviderRegistry:
    def __init__(self) -> None:
        self._entries: dict[ProviderName, tuple[ProviderConfig, PaymentProvider]] = {}
        self._default: Optional[ProviderName] = None
        self._frozen = False

    @staticmethod
    def _key(name: "str | ProviderName | None") -> ProviderName:
        try:
            return ProviderName.parse(name)
        except ValueError:
            raise UnknownProviderError(None if name is None else str(name))

    def register(
        self,
        name: "str | ProviderName",
        config: ProviderConfig,
        provider: PaymentProvider,
        *,
        default: bool = False,
    ) -> None:
        if self._frozen:
            raise RuntimeError("provider registry is frozen")
        key = self._key(name)
        self._entries[key] = (config, provider)
        if default or self._default is None:
            self._default = key
        logger.info("payment_provider_registered", provider=key.value, sandbox=config.sandbox, default=self._default == key)

    def freeze(self) -> "ProviderRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: "str | ProviderName | None") -> tuple[ProviderConfig, PaymentProvider]:
        """Case-insensitive lookup; raises UnknownProviderError for unregistered names."""
        key = self._key(name)
        entry = self._entries.get(key)
        if entry is None:
            raise UnknownProviderError(key.value)
        return entry

    def default_provider(self) -> ProviderName:
        if self._default is None:
            raise UnknownProviderError(None)
        return self._default

    def names(self) -> list[ProviderName]:
        return list(self._entries)

    def __contains__(self, name: object) -> bool:
        try:
            return self._key(name) in self._entries  # type: ignore[arg-type]
        except UnknownProviderError:
            return False

    async def aclose(self) -> None:
        for key, (_, provider) in self._entries.items():
            try:
                await provider.aclose()
            except Exception as exc:  # noqa: BLE001
                logger.warning("payment_provider_close_failed", provider=key.value, error=str(exc))
