from .request_context import RequestContextMiddleware, get_request_id, get_client_ip
from .logging import LoggingMiddleware

__all__ = [
    "RequestContextMiddleware",
    "LoggingMiddleware",
    "get_request_id",
    "get_client_ip",
]
