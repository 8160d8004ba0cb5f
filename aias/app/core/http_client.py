"""HTTP client construction for outbound calls to managed services.

The REST key-value store is the only in-process consumer today; timeouts are
not tuned per call, every request inherits the client's configuration.
"""

import httpx

from aias.app.core.config import settings


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with default settings.

    Note: The returned client should be closed when done:
        async with create_http_client() as client:
            ...

    Args:
        **kwargs: Override default settings. Can include:
            - timeout: Single timeout value for all operations
            - max_connections: Maximum connections
            - max_keepalive_connections: Maximum keepalive connections
            - transport: Custom transport (used by tests)

    Returns:
        A new httpx.AsyncClient instance.
    """
    timeout = httpx.Timeout(kwargs.get("timeout", settings.kv_timeout_seconds))
    limits = httpx.Limits(
        max_connections=kwargs.get("max_connections", 20),
        max_keepalive_connections=kwargs.get("max_keepalive_connections", 10),
        keepalive_expiry=30.0,
    )
    config = {"timeout": timeout, "limits": limits}
    if "transport" in kwargs:
        config["transport"] = kwargs["transport"]
    return httpx.AsyncClient(**config)
