import pytest

from application.ports.payment_provider import PaymentProvider
from application.services.provider_registry import ProviderRegistry
from core.settings import ProviderConfig
from domain.payment.entity import ProviderName
from domain.payment.exceptions import UnknownProviderError

from conftest import ScriptedProvider


class _SquareStub(ScriptedProvider):
    provider = ProviderName.SQUARE


def test_scripted_provider_satisfies_port():
    assert isinstance(ScriptedProvider(), PaymentProvider)


def test_resolve_is_case_insensitive():
    registry = ProviderRegistry()
    adapter = ScriptedProvider()
    config = ProviderConfig(api_key="k")
    registry.register("IyziLink", config, adapter)

    resolved_config, resolved = registry.resolve("IYZILINK")
    assert resolved is adapter
    assert resolved_config is config
    assert "iyzilink" in registry
    assert registry.names() == [ProviderName.IYZILINK]


def test_unknown_provider_raises():
    registry = ProviderRegistry()
    registry.register("iyzilink", ProviderConfig(), ScriptedProvider())
    with pytest.raises(UnknownProviderError):
        registry.resolve("stripe")
    with pytest.raises(UnknownProviderError):
        registry.resolve("bitpay")


def test_default_is_first_registered_unless_flagged():
    registry = ProviderRegistry()
    registry.register("iyzilink", ProviderConfig(), ScriptedProvider())
    assert registry.default_provider() is ProviderName.IYZILINK
    registry.register("square", ProviderConfig(), _SquareStub(), default=True)
    assert registry.default_provider() is ProviderName.SQUARE


def test_empty_registry_has_no_default():
    with pytest.raises(UnknownProviderError):
        ProviderRegistry().default_provider()


def test_frozen_registry_rejects_registration():
    registry = ProviderRegistry().freeze()
    assert registry.frozen
    with pytest.raises(RuntimeError):
        registry.register("iyzilink", ProviderConfig(), ScriptedProvider())


@pytest.mark.asyncio
async def test_aclose_closes_every_adapter():
    closed = []

    class _Closing(ScriptedProvider):
        async def aclose(self):
            closed.append(self.provider)

    class _Broken(_SquareStub):
        async def aclose(self):
            raise RuntimeError("socket already closed")

    registry = ProviderRegistry()
    registry.register("iyzilink", ProviderConfig(), _Closing())
    registry.register("square", ProviderConfig(), _Broken())
    await registry.aclose()
    assert closed == [ProviderName.IYZILINK]
