# src/railflow/bridge/__init__.py
"""Loopback web bridge: claim mailbox, HTTP server and client."""

from railflow.bridge.client import BridgeClient
from railflow.bridge.mailbox import TaskMailbox, UnknownTaskError
from railflow.bridge.server import BridgeServer
from railflow.bridge.token import BridgeToken
from railflow.bridge.url import BridgeUrlError, default_bridge_url, validate_bridge_url

__all__ = [
    "BridgeClient",
    "BridgeServer",
    "BridgeToken",
    "BridgeUrlError",
    "TaskMailbox",
    "UnknownTaskError",
    "default_bridge_url",
    "validate_bridge_url",
]
