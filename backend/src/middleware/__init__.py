from src.middleware.auth import OptionalAPIKeyMiddleware, get_valid_api_keys
from src.middleware.request_logging import RequestLoggingMiddleware

__all__ = ["OptionalAPIKeyMiddleware", "RequestLoggingMiddleware", "get_valid_api_keys"]
