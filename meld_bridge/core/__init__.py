"""core — Meld transport, WebChannel proxies and connection management."""
from .connection_manager import build_meld_instance, get_meld_instance, init_meld_instance
from meld_bridge.errors import MeldBridgeError, ProtocolError, StaleReferenceError, TransportError
from .instance import HostCallbacks, MeldInstance
from .transport import ConnectionStatus, Endpoint, Transport
from .webchannel import MessageType, RemoteObject, RemoteSignal, WebChannel

__all__ = [
    "ConnectionStatus",
    "Endpoint",
    "HostCallbacks",
    "MeldBridgeError",
    "MeldInstance",
    "MessageType",
    "ProtocolError",
    "RemoteObject",
    "RemoteSignal",
    "StaleReferenceError",
    "Transport",
    "TransportError",
    "WebChannel",
    "build_meld_instance",
    "get_meld_instance",
    "init_meld_instance",
]
