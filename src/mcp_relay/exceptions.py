"""Error taxonomy for process supervision and the stdio JSON-RPC gateway.

Every error carries a user-facing ``message``, an optional ``suggestion``
and a ``details`` mapping. The CLI prints the first two; ``details`` is
meant for structured logs.
"""

from typing import Any, Dict, Iterable, Optional


class RelayError(Exception):
    """Base error with user-friendly messages."""

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class ConfigurationError(RelayError):
    """Configuration could not be loaded or validated."""

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class SpawnError(RelayError):
    """The OS could not launch a server process."""

    def __init__(self, server_id: str, message: str, **kwargs: Any):
        self.server_id = server_id
        super().__init__(message, **kwargs)


class SecretUnavailableError(SpawnError):
    """Required secrets are missing from the vault (fail-closed policy)."""

    def __init__(self, server_id: str, missing: Iterable[str]):
        self.missing = sorted(missing)
        super().__init__(
            server_id,
            f"Missing secrets for server '{server_id}': {', '.join(self.missing)}",
            suggestion="Store the values with 'mcp-relay secret set' before enabling the server",
            details={"missing": self.missing},
        )


class StreamError(RelayError):
    """A server pipe closed unexpectedly or failed with an I/O error."""

    def __init__(self, message: str, closed: bool = False, **kwargs: Any):
        self.closed = closed
        super().__init__(message, **kwargs)


class ProtocolTimeoutError(RelayError):
    """No valid response arrived within the phase deadline or attempt budget."""


class ParseError(ProtocolTimeoutError):
    """The attempt budget was spent on lines that never formed a valid response."""


class ProtocolError(RelayError):
    """The peer answered with a JSON-RPC error object."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        self.code = code
        self.error_message = message
        self.data = data
        super().__init__(
            f"Server returned error {code}: {message}",
            details={"code": code, "data": data},
        )


class SessionStateError(RelayError):
    """A request was issued in a handshake state that does not allow it."""


class ServerNotFoundError(RelayError):
    """No server definition with the given id."""

    def __init__(self, server_id: str):
        self.server_id = server_id
        super().__init__(
            f"Server '{server_id}' not found",
            suggestion="List configured servers with 'mcp-relay server list'",
        )


class ProfileNotFoundError(RelayError):
    """No profile with the given id."""

    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__(
            f"Profile '{profile_id}' does not exist",
            suggestion="Create it first with 'mcp-relay profile create'",
        )
