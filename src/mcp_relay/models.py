"""Data model shared by the supervisor, gateway and store."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    """Current time as an RFC 3339 / ISO 8601 string in UTC."""
    return datetime.now(timezone.utc).isoformat()


class TrafficDirection(str, Enum):
    """Direction of a protocol line relative to the server process."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class LogStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass
class ServerDefinition:
    """Persisted server definition.

    ``secrets`` holds key names only; the values live in the vault and are
    merged into the process environment at spawn time.
    """

    id: str
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    secrets: List[str] = field(default_factory=list)
    enabled: bool = False
    profile_id: str = "default"
    description: Optional[str] = None
    category: str = "other"
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerDefinition":
        """Create definition from dictionary."""
        return cls(**data)


@dataclass
class Profile:
    id: str
    name: str
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UsageSnapshot:
    """Accumulated traffic counters for one server."""

    server_id: str
    bytes_in: int = 0
    bytes_out: int = 0
    total_bytes: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    total_tokens: int = 0
    messages_in: int = 0
    messages_out: int = 0
    updated_at: str = field(default_factory=utc_now)

    def to_event(self) -> Dict[str, Any]:
        """Render as a ``context-usage`` event payload."""
        return {
            "serverId": self.server_id,
            "bytesIn": self.bytes_in,
            "bytesOut": self.bytes_out,
            "totalBytes": self.total_bytes,
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "totalTokens": self.total_tokens,
            "messagesIn": self.messages_in,
            "messagesOut": self.messages_out,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class LogEvent:
    """One line of server output."""

    id: str
    name: str
    stream: LogStream
    message: str
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Render as a ``server-log`` event payload."""
        return {
            "id": self.id,
            "name": self.name,
            "stream": self.stream.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
