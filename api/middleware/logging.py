"""
访问日志中间件
记录每个 HTTP 请求的方法、路径、状态码与耗时。

不记录请求体：下单请求可能携带卡号，Webhook 需要原始字节验签。
"""
import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from core.logging_config import get_logger


logger = get_logger(__name__)


class LoggingMiddleware:
    """纯 ASGI 实现，不包装请求体"""

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http" or scope["path"] in self.SKIP_PATHS:
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message: Message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                headers = list(message.get("headers", []))
                headers.append((b"x-process-time", f"{time.perf_counter() - start:.3f}".encode()))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=scope["method"],
                path=scope["path"],
                duration=round(time.perf_counter() - start, 4),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        log_data = {
            "method": scope["method"],
            "path": scope["path"],
            "status_code": status_code,
            "duration": round(time.perf_counter() - start, 4),
        }
        if status_code < 400:
            logger.info("request_completed", **log_data)
        elif status_code < 500:
            logger.warning("request_client_error", **log_data)
        else:
            logger.error("request_server_error", **log_data)
