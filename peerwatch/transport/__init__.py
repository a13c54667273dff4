from peerwatch.transport.base import Role, SessionHandle, Transport
from peerwatch.transport.memory import MemoryHub, MemoryTransport
from peerwatch.transport.websocket import WebSocketTransport

__all__ = [
    "MemoryHub",
    "MemoryTransport",
    "Role",
    "SessionHandle",
    "Transport",
    "WebSocketTransport",
]
