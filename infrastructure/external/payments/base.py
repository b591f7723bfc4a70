"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement ``charge``/``refund`` plus any
provider-specific signature scheme.

Error split for outbound calls:
- connection could not be established -> retried (request never left)
- timeout / transport error after sending / 5xx / 429 -> ProviderIndeterminateError
- other 4xx or an explicit decline in the body -> ProviderRejectedError
"""
from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import ChargeRequest, ChargeResult, RefundRequest, RefundResult
from application.services.webhook_verifier import compute_signature, signatures_match
from core.logging_config import get_logger
from core.settings import ProviderConfig
from domain.payment.entity import PaymentMethod, ProviderName, TransactionStatus
from domain.payment.exceptions import ProviderIndeterminateError, ProviderRejectedError
from shared.codes.payment_codes import normalize_status


logger = get_logger(__name__)


class CallDeduplicator:
    """In-process dedupe of provider calls keyed by an idempotency token.

    For providers without native idempotency: concurrent calls with the same
    token share one in-flight call, and settled outcomes (success or explicit
    decline) are replayed. Indeterminate outcomes are not cached.
    """

    def __init__(self, max_entries: int = 2048) -> None:
        self._max_entries = max_entries
        self._inflight: dict[str, asyncio.Task] = {}
        self._settled: "OrderedDict[str, Any]" = OrderedDict()

    async def run(self, token: str, call: Callable[[], Awaitable[Any]]) -> Any:
        settled = self._settled.get(token)
        if settled is not None:
            self._settled.move_to_end(token)
            if isinstance(settled, ProviderRejectedError):
                raise settled
            return settled
        task = self._inflight.get(token)
        if task is None:
            task = asyncio.ensure_future(call())
            self._inflight[token] = task
            task.add_done_callback(lambda t: self._settle(token, t))
        return await asyncio.shield(task)

    def _settle(self, token: str, task: asyncio.Task) -> None:
        self._inflight.pop(token, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            self._settled[token] = task.result()
        elif isinstance(exc, ProviderRejectedError):
            self._settled[token] = exc
        else:
            return
        while len(self._settled) > self._max_entries:
            self._settled.popitem(last=False)


class BasePaymentClient:
    provider: ProviderName
    signature_header: str = "X-Webhook-Signature"
    supported_methods: frozenset[PaymentMethod] = frozenset(PaymentMethod)
    default_base_url: str = ""
    sandbox_base_url: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        if self.config.base_url:
            return self.config.base_url.rstrip("/")
        return self.sandbox_base_url if self.config.sandbox else self.default_base_url

    @property
    def timeouts(self) -> httpx.Timeout:
        total = self.config.timeout_seconds or self._timeouts_cfg["total"]
        return httpx.Timeout(
            total,
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[Any]]):
        # 仅重试建连失败：请求尚未发出，重试不会造成重复扣款
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.05, max=2.0),
            retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # Capability interface
    def provider_name(self) -> ProviderName:
        return self.provider

    def supports(self, method: PaymentMethod) -> bool:
        return PaymentMethod(method) in self.supported_methods

    async def charge(self, req: ChargeRequest) -> ChargeResult:
        raise NotImplementedError

    async def refund(self, req: RefundRequest) -> RefundResult:
        raise NotImplementedError

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """Default scheme: base64(HMAC-SHA256(webhook secret, raw body))."""
        secret = self.config.signing_secret()
        if not secret or not signature_header:
            return False
        return signatures_match(compute_signature(secret, raw_body), signature_header)

    def signed_at(self, signature_header: Optional[str]) -> Optional[datetime]:
        """Timestamp covered by the signature, when the scheme signs one."""
        return None

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> Optional[TransactionStatus]:
        internal = normalize_status(self.provider.value, provider_status)
        return TransactionStatus(internal) if internal else None

    def _error_details(self, data: Any) -> tuple[str, Optional[str]]:
        """Extract (message, provider_code) from an error body."""
        if isinstance(data, dict):
            message = data.get("errorMessage") or data.get("message") or data.get("error_description")
            code = data.get("errorCode") or data.get("code") or data.get("error")
            return str(message or "payment declined"), (str(code) if code is not None else None)
        return "payment declined", None

    def _indeterminate(self, message: str, **kwargs) -> ProviderIndeterminateError:
        return ProviderIndeterminateError(message, provider=self.provider.value, **kwargs)

    def _rejected(self, message: str, provider_code: Optional[str] = None, **kwargs) -> ProviderRejectedError:
        return ProviderRejectedError(message, provider=self.provider.value, provider_code=provider_code, **kwargs)

    async def _post_json(
        self,
        path: str,
        payload: Any,
        *,
        headers: Optional[dict[str, str]] = None,
        body: Optional[str] = None,
    ) -> dict:
        """POST a JSON body and map the outcome onto the rejected/indeterminate split."""
        url = f"{self.base_url}{path}"
        content = body if body is not None else json.dumps(payload, separators=(",", ":"), default=str)
        request_headers = {"Content-Type": "application/json", "Accept": "application/json", **(headers or {})}

        async with self.client() as client:
            try:
                response = await self._retry(lambda: client.post(url, content=content, headers=request_headers))
            except httpx.TimeoutException as exc:
                self._log("payment_provider_timeout", path=path, error=type(exc).__name__)
                raise self._indeterminate(f"{self.provider.value} request timed out") from exc
            except httpx.TransportError as exc:
                self._log("payment_provider_transport_error", path=path, error=type(exc).__name__)
                raise self._indeterminate(f"{self.provider.value} transport error: {exc}") from exc

        status_code = response.status_code
        if status_code >= 500 or status_code == 429:
            self._log("payment_provider_unavailable", path=path, status_code=status_code)
            raise self._indeterminate(f"{self.provider.value} answered HTTP {status_code}")

        try:
            data = response.json()
        except ValueError:
            data = None

        if status_code >= 400:
            message, code = self._error_details(data)
            self._log("payment_provider_rejected", path=path, status_code=status_code, provider_code=code)
            raise self._rejected(message, code)
        if not isinstance(data, dict):
            self._log("payment_provider_unreadable", path=path, status_code=status_code)
            raise self._indeterminate(f"{self.provider.value} returned an unreadable response")
        return data

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider.value,
            **kwargs,
        )
