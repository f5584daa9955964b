"""Ephemeral tool inspection: one process and one handshake per call."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from .. import __version__
from ..config.settings import RelaySettings
from ..exceptions import ServerNotFoundError
from ..metering import TrafficMeter
from ..models import ServerDefinition, TrafficDirection
from ..protocol import HandshakeSession, ProtocolClient
from ..vault import SecretInjector
from .process import launch, terminate
from .server_registry import DefinitionSource

logger = structlog.get_logger(__name__)

STDERR_TAIL_LINES = 20


class ToolInspector:
    """List or call tools through short-lived, independent server processes.

    Inspection never touches the registry table: each call launches its own
    process, runs the full handshake, sends one request and kills the
    process on the way out, whether the call succeeded or not.
    """

    def __init__(
        self,
        store: DefinitionSource,
        injector: SecretInjector,
        meter: Optional[TrafficMeter] = None,
        settings: Optional[RelaySettings] = None,
    ):
        self.store = store
        self.injector = injector
        self.meter = meter
        self.settings = settings or RelaySettings()

    async def list_tools(self, server_id: str) -> Dict[str, Any]:
        """Return the ``tools/list`` result of a server."""
        definition = await self._definition(server_id)
        timeout = self.settings.protocol.list_timeout
        async with self._session(definition) as session:
            return await session.list_tools(timeout)

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Return the ``tools/call`` result for one tool invocation."""
        definition = await self._definition(server_id)
        timeout = self.settings.protocol.call_timeout
        async with self._session(definition) as session:
            return await session.call_tool(tool_name, arguments, timeout)

    async def _definition(self, server_id: str) -> ServerDefinition:
        definition = await self.store.get_server(server_id)
        if definition is None:
            raise ServerNotFoundError(server_id)
        return definition

    @asynccontextmanager
    async def _session(self, definition: ServerDefinition) -> AsyncIterator[HandshakeSession]:
        protocol = self.settings.protocol
        env = await asyncio.to_thread(
            self.injector.resolve, definition.id, definition.secrets, definition.env
        )
        process = await launch(
            definition.id, definition.command, definition.args, env, limit=protocol.stream_limit
        )
        stderr_tail: List[str] = []
        stderr_task = asyncio.create_task(_collect_stderr(process.stderr, stderr_tail))

        client = ProtocolClient(
            process.stdout,
            process.stdin,
            on_traffic=self._traffic_callback(definition.id),
            attempt_budget=protocol.attempt_budget,
            line_wait=protocol.line_wait,
        )
        session = HandshakeSession(
            client,
            protocol_version=protocol.protocol_version,
            client_name=f"{protocol.client_name}-inspector",
            client_version=__version__,
        )

        try:
            await session.initialize(protocol.initialize_timeout)
            yield session
        except Exception as e:
            logger.warning(
                "Inspection failed",
                server_id=definition.id,
                error=str(e),
                stderr=stderr_tail[-5:],
            )
            raise
        finally:
            session.close()
            await terminate(
                process,
                timeout=self.settings.process.stop_timeout,
                kill_tree=self.settings.process.kill_tree,
            )
            stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)
            logger.debug("Inspection process terminated", server_id=definition.id, pid=process.pid)

    def _traffic_callback(self, server_id: str):
        if self.meter is None:
            return None

        def on_traffic(direction: TrafficDirection, line: str) -> None:
            self.meter.record(server_id, direction, line)

        return on_traffic


async def _collect_stderr(
    reader: Optional[asyncio.StreamReader], lines: List[str], limit: int = STDERR_TAIL_LINES
) -> None:
    """Drain stderr so the child never blocks on a full pipe; keep the tail."""
    if reader is None:
        return
    while True:
        try:
            raw = await reader.readline()
        except ValueError:
            continue
        except OSError:
            return
        if not raw:
            return
        lines.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        del lines[:-limit]
