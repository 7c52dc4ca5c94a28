"""
Shared async HTTP client for upstream APIs (MTA Bus Time, Google Places).
One pooled httpx.AsyncClient is created at startup and reused by every service.
Injects the API key, applies a per-call timeout and maps failures to UpstreamError kinds.
"""
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from src.monitoring.metrics import record_upstream_call
from src.upstream.errors import InternalError, ResourceNotFoundError

logger = logging.getLogger(__name__)

UPSTREAM_REQUEST_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class UpstreamConfig:
    base_url: str
    api_key: str
    key_param: str = "key"
    name: str = "upstream"
    timeout_seconds: float = UPSTREAM_REQUEST_TIMEOUT_SECONDS


def create_http_client() -> httpx.AsyncClient:
    """Pooled connector shared across concurrent requests."""
    return httpx.AsyncClient(
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        headers={"Accept": "application/json"},
    )


class UpstreamClient:
    """GET-only JSON client bound to one upstream base URL and key."""

    def __init__(self, config: UpstreamConfig, http: httpx.AsyncClient):
        self._config = config
        self._base = config.base_url.rstrip("/")
        self._http = http

    @property
    def name(self) -> str:
        return self._config.name

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        distinguish_not_found: bool = False,
    ) -> dict[str, Any]:
        """
        GET {base}{path} with the API key added to the query string and return the decoded body.
        Raises ResourceNotFoundError on 404 when distinguish_not_found is set, InternalError otherwise.
        """
        url = f"{self._base}{path}"
        query: dict[str, Any] = dict(params or {})
        query[self._config.key_param] = self._config.api_key
        try:
            resp = await self._http.get(url, params=query, timeout=self._config.timeout_seconds)
        except httpx.TimeoutException as e:
            record_upstream_call(self.name, "timeout")
            logger.warning(
                "telemetry upstream_timeout service=%s path=%s",
                self.name,
                path,
                extra={"service": self.name, "path": path},
            )
            raise InternalError(f"{self.name} request timed out: {path}") from e
        except httpx.HTTPError as e:
            record_upstream_call(self.name, "error")
            logger.warning(
                "telemetry upstream_transport_error service=%s path=%s error=%s",
                self.name,
                path,
                str(e),
                extra={"service": self.name, "path": path, "error": str(e)},
            )
            raise InternalError(f"{self.name} request failed: {e}") from e

        if resp.status_code == 404 and distinguish_not_found:
            record_upstream_call(self.name, "not_found")
            logger.info("telemetry upstream_not_found service=%s path=%s", self.name, path)
            raise ResourceNotFoundError(f"{self.name} resource not found: {path}")
        if not resp.is_success:
            record_upstream_call(self.name, "error")
            logger.warning(
                "telemetry upstream_bad_status service=%s path=%s status=%s",
                self.name,
                path,
                resp.status_code,
                extra={"service": self.name, "path": path, "status": resp.status_code},
            )
            raise InternalError(f"{self.name} returned status {resp.status_code} for {path}")

        try:
            data = resp.json()
        except ValueError as e:
            record_upstream_call(self.name, "error")
            raise InternalError(f"{self.name} response was not valid JSON: {path}") from e
        if not isinstance(data, dict):
            record_upstream_call(self.name, "error")
            raise InternalError(f"{self.name} response was not a JSON object: {path}")
        record_upstream_call(self.name, "ok")
        return data
