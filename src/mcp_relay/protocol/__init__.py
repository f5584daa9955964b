"""Line-delimited JSON-RPC 2.0 over a process's standard streams."""

from .client import HandshakeSession, ProtocolClient, SessionState
from .messages import JSONRPC_MARKER, is_response

__all__ = [
    "HandshakeSession",
    "JSONRPC_MARKER",
    "ProtocolClient",
    "SessionState",
    "is_response",
]
