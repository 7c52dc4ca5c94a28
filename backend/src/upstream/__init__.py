from src.upstream.client import UpstreamClient, UpstreamConfig, create_http_client
from src.upstream.errors import InternalError, ResourceNotFoundError, UpstreamError

__all__ = [
    "InternalError",
    "ResourceNotFoundError",
    "UpstreamClient",
    "UpstreamConfig",
    "UpstreamError",
    "create_http_client",
]
