"""Error kinds raised by upstream calls and the services built on them."""


class UpstreamError(Exception):
    """Base class for failures talking to an upstream service."""


class InternalError(UpstreamError):
    """Transport failure, unexpected status, or a body we could not read."""


class ResourceNotFoundError(UpstreamError):
    """Upstream reports that the referenced route/stop does not exist."""
