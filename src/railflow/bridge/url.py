# src/railflow/bridge/url.py
"""Bridge URL validation.

The bridge is a loopback-only service. Anything that could send the bearer
token off the machine (another host, https termination elsewhere, a path
that a proxy might route) is rejected rather than normalized.
"""

from urllib.parse import urlsplit

from railflow.core.config import DEFAULT_BRIDGE_PORT, LOOPBACK_HOST


class BridgeUrlError(ValueError):
    """Raised when a bridge URL is not http://127.0.0.1[:port][/]."""


def default_bridge_url(port: int = DEFAULT_BRIDGE_PORT) -> str:
    return f"http://{LOOPBACK_HOST}:{port}"


def validate_bridge_url(raw: str | None) -> str:
    """Return the canonical form http://127.0.0.1:<port>.

    Blank input returns the default URL.

    Raises:
        BridgeUrlError: For any other scheme, host, path, query, fragment or
            credentials, or an out-of-range port.
    """
    if raw is None or not raw.strip():
        return default_bridge_url()

    parts = urlsplit(raw.strip())
    if parts.scheme != "http":
        raise BridgeUrlError(f"bridge URL must use http, got {parts.scheme or '<none>'!r}")
    if parts.username is not None or parts.password is not None:
        raise BridgeUrlError("bridge URL must not contain credentials")
    if parts.hostname != LOOPBACK_HOST:
        raise BridgeUrlError(f"bridge host must be {LOOPBACK_HOST}, got {parts.hostname!r}")
    if parts.path not in ("", "/"):
        raise BridgeUrlError(f"bridge URL must not have a path, got {parts.path!r}")
    if parts.query or parts.fragment or raw.strip().endswith(("?", "#")):
        raise BridgeUrlError("bridge URL must not have a query or fragment")

    try:
        port = parts.port
    except ValueError as e:
        raise BridgeUrlError(f"invalid bridge port: {e}") from e
    if port == 0:
        raise BridgeUrlError("bridge port must be between 1 and 65535")
    return default_bridge_url(port or DEFAULT_BRIDGE_PORT)
