"""Socket transport: wire protocol, server and client."""

from .client import DaemonClient, read_descriptor, resolve_socket_path
from .protocol import encode, parse_message
from .server import BusStartError, EventBus, Subscription

__all__ = [
    "BusStartError",
    "DaemonClient",
    "EventBus",
    "Subscription",
    "encode",
    "parse_message",
    "read_descriptor",
    "resolve_socket_path",
]
