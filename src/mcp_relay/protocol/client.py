"""Line-framed JSON-RPC exchange with a server over its stdin/stdout.

Servers frequently print banners, warnings or log lines on stdout before
they start speaking the protocol. The reader therefore skips anything that
is not a JSON object carrying the ``jsonrpc`` marker, up to a fixed number
of lines per response. There is exactly one request in flight per session
and responses are matched by arrival order, not by id.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from .. import __version__
from ..exceptions import (
    ParseError,
    ProtocolError,
    ProtocolTimeoutError,
    SessionStateError,
    StreamError,
)
from ..models import TrafficDirection
from . import messages

logger = structlog.get_logger(__name__)

TrafficCallback = Callable[[TrafficDirection, str], Any]

DEFAULT_ATTEMPT_BUDGET = 20
DEFAULT_LINE_WAIT = 0.3


class SessionState(str, Enum):
    SPAWNED = "spawned"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    LISTING = "listing"
    CALLING = "calling"
    CLOSED = "closed"


class ProtocolClient:
    """Send JSON-RPC lines and read back the next valid response."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        on_traffic: Optional[TrafficCallback] = None,
        attempt_budget: int = DEFAULT_ATTEMPT_BUDGET,
        line_wait: float = DEFAULT_LINE_WAIT,
    ):
        self.reader = reader
        self.writer = writer
        self.on_traffic = on_traffic
        self.attempt_budget = attempt_budget
        self.line_wait = line_wait

    async def send(self, message: Dict[str, Any]) -> None:
        """Write one message as a newline-terminated line."""
        line = messages.encode(message)
        self._report(TrafficDirection.OUTBOUND, line)
        try:
            self.writer.write((line + "\n").encode("utf-8"))
            await self.writer.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise StreamError(
                f"Server closed its input while sending {message.get('method')}",
                closed=True,
            ) from e
        except OSError as e:
            raise StreamError(f"I/O error while sending {message.get('method')}: {e}") from e

    async def read_response(self, phase_timeout: float, context: str) -> Dict[str, Any]:
        """Return the first line that parses as a marked JSON-RPC object.

        Each line read, blank or not, uses one attempt. Waiting for a line
        is bounded by ``line_wait``; idle waits do not use attempts but the
        phase deadline is checked after each one.

        Raises:
            ProtocolTimeoutError: the phase deadline passed
            ParseError: the attempt budget was spent on noise
            StreamError: the stream ended or failed
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + phase_timeout
        attempts = 0

        while attempts < self.attempt_budget:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProtocolTimeoutError(
                    f"Timeout waiting for response during {context} "
                    f"(waited {phase_timeout:g}s)",
                    suggestion="Check the server logs; it may still be installing or may not speak MCP over stdio",
                    details={"context": context, "attempts": attempts},
                )

            try:
                raw = await asyncio.wait_for(
                    self.reader.readline(), timeout=min(self.line_wait, remaining)
                )
            except asyncio.TimeoutError:
                continue
            except ValueError as e:
                # readline() reports an over-long line as ValueError
                raise StreamError(f"Oversized line during {context}: {e}") from e
            except OSError as e:
                raise StreamError(f"I/O error during {context}: {e}") from e

            if not raw:
                raise StreamError(
                    f"Server closed connection during {context}",
                    closed=True,
                    suggestion="Run the server command manually to see why it exits",
                )

            attempts += 1
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue

            self._report(TrafficDirection.INBOUND, line)

            message = messages.is_response(line)
            if message is not None:
                return message

            logger.debug("Skipping non-protocol line", context=context, line=line[:200])

        raise ParseError(
            f"Failed to get valid JSON-RPC response after {self.attempt_budget} "
            f"attempts during {context}",
            details={"context": context, "attempts": attempts},
        )

    async def exchange(
        self, message: Dict[str, Any], phase_timeout: float, context: str
    ) -> Dict[str, Any]:
        """Send a request and return its response, raising on error objects."""
        await self.send(message)
        response = await self.read_response(phase_timeout, context)

        error = response.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise ProtocolError(error.get("code"), str(error.get("message")), error.get("data"))
            raise ProtocolError(None, str(error))
        return response

    def close(self) -> None:
        try:
            self.writer.close()
        except OSError:
            pass

    def _report(self, direction: TrafficDirection, line: str) -> None:
        if self.on_traffic is not None:
            self.on_traffic(direction, line)


class HandshakeSession:
    """One MCP conversation: initialize, then a single domain request.

    State moves spawned -> initializing -> initialized -> listing|calling
    and ends in closed. Any error also closes the session.
    """

    def __init__(
        self,
        client: ProtocolClient,
        protocol_version: str = "2024-11-05",
        client_name: str = "mcp-relay",
        client_version: str = __version__,
    ):
        self.client = client
        self.protocol_version = protocol_version
        self.client_name = client_name
        self.client_version = client_version
        self.state = SessionState.SPAWNED
        self.pending_id: Optional[int] = None
        self._next_id = 0

    async def initialize(self, timeout: float) -> Dict[str, Any]:
        """Perform the handshake and return the initialize response."""
        self._require(SessionState.SPAWNED)
        self.state = SessionState.INITIALIZING

        params = messages.initialize_params(
            self.protocol_version, self.client_name, self.client_version
        )
        response = await self._request(messages.INITIALIZE, params, timeout, "initialization")

        await self._guard(self.client.send(messages.notification(messages.INITIALIZED)))
        self.state = SessionState.INITIALIZED
        return response

    async def list_tools(self, timeout: float) -> Dict[str, Any]:
        self._require(SessionState.INITIALIZED)
        self.state = SessionState.LISTING
        response = await self._request(messages.TOOLS_LIST, {}, timeout, messages.TOOLS_LIST)
        self.state = SessionState.INITIALIZED
        result = response.get("result")
        return result if result is not None else {"tools": []}

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]], timeout: float
    ) -> Dict[str, Any]:
        self._require(SessionState.INITIALIZED)
        self.state = SessionState.CALLING
        params = {"name": name, "arguments": arguments or {}}
        response = await self._request(messages.TOOLS_CALL, params, timeout, messages.TOOLS_CALL)
        self.state = SessionState.INITIALIZED
        result = response.get("result")
        return result if result is not None else {"content": []}

    def close(self) -> None:
        if self.state != SessionState.CLOSED:
            self.state = SessionState.CLOSED
            self.client.close()

    async def _request(
        self, method: str, params: Dict[str, Any], timeout: float, context: str
    ) -> Dict[str, Any]:
        self._next_id += 1
        self.pending_id = self._next_id
        response = await self._guard(
            self.client.exchange(messages.request(self.pending_id, method, params), timeout, context)
        )
        if response.get("id") != self.pending_id:
            logger.debug(
                "Response id does not match pending request",
                expected=self.pending_id,
                received=response.get("id"),
            )
        self.pending_id = None
        return response

    async def _guard(self, awaitable):
        try:
            return await awaitable
        except BaseException:
            self.close()
            raise

    def _require(self, expected: SessionState) -> None:
        if self.state != expected:
            raise SessionStateError(
                f"Session is {self.state.value}, expected {expected.value}"
            )
