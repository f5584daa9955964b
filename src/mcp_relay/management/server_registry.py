"""Server registry tracking the supervised process of each server id."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

import structlog

from ..config.logging import sanitize_log_data
from ..config.settings import RelaySettings
from ..events import LOG_TOPIC, EventBus
from ..exceptions import RelayError, SpawnError, StreamError
from ..metering import TrafficMeter
from ..models import LogEvent, LogStream, ServerDefinition, TrafficDirection
from ..protocol import messages
from ..vault import SecretInjector
from .process import is_alive, launch, terminate

logger = structlog.get_logger(__name__)

READER_GRACE_SECONDS = 0.5


class DefinitionSource(Protocol):
    """The part of the definition store the registry reads from."""

    async def get_server(self, server_id: str) -> Optional[ServerDefinition]: ...


@dataclass
class RunningProcess:
    """A supervised server process and the tasks reading its output."""

    server_id: str
    name: str
    process: asyncio.subprocess.Process
    start_time: float = field(default_factory=time.time)
    stopping: bool = False
    _readers: List[asyncio.Task] = field(default_factory=list, repr=False)
    _watcher: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def uptime(self) -> float:
        """Get process uptime in seconds."""
        return time.time() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "name": self.name,
            "pid": self.pid,
            "start_time": self.start_time,
            "uptime_seconds": round(self.uptime, 1),
            "alive": is_alive(self.pid),
        }


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass."""

    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "stopped": self.stopped,
            "unchanged": self.unchanged,
            "failed": self.failed,
        }


class ServerRegistry:
    """Owns the table of server id -> running process.

    All table mutations go through one asyncio lock. Output readers never
    hold it; they publish log events and queue metering observations. The
    exit watcher takes it only to drop the entry of a process that exited
    on its own.
    """

    def __init__(
        self,
        store: DefinitionSource,
        injector: SecretInjector,
        meter: TrafficMeter,
        events: Optional[EventBus] = None,
        settings: Optional[RelaySettings] = None,
    ):
        self.store = store
        self.injector = injector
        self.meter = meter
        self.events = events
        self.settings = settings or RelaySettings()
        self._processes: Dict[str, RunningProcess] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_running(self, server_id: str) -> bool:
        return server_id in self._processes

    def running_ids(self) -> List[str]:
        return list(self._processes)

    def get(self, server_id: str) -> Optional[RunningProcess]:
        return self._processes.get(server_id)

    def list_status(self) -> List[Dict[str, Any]]:
        """Summary of every running server, with its traffic counters."""
        status = []
        for running in self._processes.values():
            info = running.to_dict()
            usage = self.meter.snapshot(running.server_id)
            info["usage"] = usage.to_event() if usage else None
            status.append(info)
        return status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn(self, definition: ServerDefinition) -> RunningProcess:
        """Start a server unless it is already running.

        Raises:
            SpawnError: launch failed; the table is left unchanged
        """
        async with self._lock:
            return await self._spawn(definition)

    async def stop(self, server_id: str) -> bool:
        """Stop a server. Returns False when it was not running."""
        async with self._lock:
            return await self._stop(server_id)

    async def restart(self, server_id: str) -> Optional[RunningProcess]:
        """Stop a server and start it again if its definition is still enabled."""
        async with self._lock:
            await self._stop(server_id)

            definition = await self.store.get_server(server_id)
            if definition is None or not definition.enabled:
                logger.info("Server not restarted, disabled or removed", server_id=server_id)
                return None
            return await self._spawn(definition)

    async def reconcile(self, desired_ids: Iterable[str]) -> ReconcileResult:
        """Converge the running set on ``desired_ids``.

        Servers outside the desired set are stopped. Each desired server that
        is not running gets exactly one spawn attempt; failures are logged
        and reported in the result without aborting the pass.
        """
        desired = list(dict.fromkeys(desired_ids))
        wanted = set(desired)
        result = ReconcileResult()

        async with self._lock:
            for server_id in [sid for sid in self._processes if sid not in wanted]:
                await self._stop_quietly(server_id)
                result.stopped.append(server_id)

            for server_id in desired:
                if server_id in self._processes:
                    result.unchanged.append(server_id)
                    continue

                try:
                    definition = await self.store.get_server(server_id)
                    if definition is None:
                        raise SpawnError(server_id, f"Server '{server_id}' not found")
                    await self._spawn(definition)
                    result.started.append(server_id)
                except RelayError as e:
                    logger.error("Failed to start server", server_id=server_id, error=e.message)
                    result.failed[server_id] = e.message
                except Exception as e:
                    logger.exception("Unexpected error starting server", server_id=server_id)
                    result.failed[server_id] = str(e)

        logger.info("Reconciled servers", **result.to_dict())
        return result

    async def stop_all(self) -> List[str]:
        """Stop every running server. Returns the ids that were stopped."""
        async with self._lock:
            stopped = list(self._processes)
            for server_id in stopped:
                await self._stop_quietly(server_id)
            return stopped

    async def send(self, server_id: str, message: Dict[str, Any]) -> None:
        """Write one JSON-RPC message to a supervised server's stdin."""
        running = self._processes.get(server_id)
        if running is None or running.process.stdin is None:
            raise RelayError(
                f"Server '{server_id}' is not running",
                suggestion="Enable the server or run 'mcp-relay run' first",
            )

        line = messages.encode(message)
        self.meter.record(server_id, TrafficDirection.OUTBOUND, line)
        try:
            running.process.stdin.write((line + "\n").encode("utf-8"))
            await running.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise StreamError(f"Server '{server_id}' closed its input", closed=True) from e
        except OSError as e:
            raise StreamError(f"I/O error writing to server '{server_id}': {e}") from e

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    async def _spawn(self, definition: ServerDefinition) -> RunningProcess:
        existing = self._processes.get(definition.id)
        if existing is not None:
            logger.debug("Server already running", server_id=definition.id, pid=existing.pid)
            return existing

        env = await asyncio.to_thread(
            self.injector.resolve, definition.id, definition.secrets, definition.env
        )

        logger.info(
            "Spawning server",
            server_id=definition.id,
            command=definition.command,
            args=definition.args,
            env=sanitize_log_data(definition.env),
            secrets=definition.secrets,
        )

        process = await launch(
            definition.id,
            definition.command,
            definition.args,
            env,
            limit=self.settings.protocol.stream_limit,
        )

        running = RunningProcess(server_id=definition.id, name=definition.name, process=process)
        running._readers = [
            asyncio.create_task(
                self._read_stream(running, LogStream.STDOUT, process.stdout),
                name=f"{definition.id}-stdout",
            ),
            asyncio.create_task(
                self._read_stream(running, LogStream.STDERR, process.stderr),
                name=f"{definition.id}-stderr",
            ),
        ]
        running._watcher = asyncio.create_task(
            self._watch_exit(running), name=f"{definition.id}-waiter"
        )
        self._processes[definition.id] = running

        logger.info("Server started", server_id=definition.id, pid=process.pid)
        return running

    async def _stop(self, server_id: str) -> bool:
        running = self._processes.get(server_id)
        if running is None:
            return False

        running.stopping = True
        try:
            exit_code = await terminate(
                running.process,
                timeout=self.settings.process.stop_timeout,
                kill_tree=self.settings.process.kill_tree,
            )
        finally:
            if self._processes.get(server_id) is running:
                del self._processes[server_id]
            await self._finish_tasks(running)

        logger.info("Server stopped", server_id=server_id, exit_code=exit_code)
        return True

    async def _stop_quietly(self, server_id: str) -> None:
        try:
            await self._stop(server_id)
        except Exception:
            logger.exception("Error while stopping server", server_id=server_id)

    async def _finish_tasks(self, running: RunningProcess) -> None:
        if running._watcher is not None:
            running._watcher.cancel()

        # Let readers flush the last lines, then cut them loose; a
        # grandchild may still hold the pipe open.
        readers = [task for task in running._readers if not task.done()]
        if readers:
            _, pending = await asyncio.wait(readers, timeout=READER_GRACE_SECONDS)
            for task in pending:
                task.cancel()

    async def _read_stream(
        self,
        running: RunningProcess,
        stream: LogStream,
        reader: Optional[asyncio.StreamReader],
    ) -> None:
        """Forward each output line as a log event; stdout lines are metered."""
        if reader is None:
            return

        while True:
            try:
                raw = await reader.readline()
            except ValueError as e:
                logger.warning("Dropped oversized output line", server_id=running.server_id, error=str(e))
                continue
            except OSError as e:
                logger.warning("Output stream failed", server_id=running.server_id, error=str(e))
                return

            if not raw:
                return

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if self.events is not None:
                self.events.publish(
                    LOG_TOPIC,
                    LogEvent(
                        id=running.server_id,
                        name=running.name,
                        stream=stream,
                        message=line,
                    ).to_dict(),
                )
            if stream == LogStream.STDOUT and line.strip():
                self.meter.observe(running.server_id, TrafficDirection.INBOUND, line)

    async def _watch_exit(self, running: RunningProcess) -> None:
        code = await running.process.wait()
        if running.stopping:
            return

        logger.warning("Server exited on its own", server_id=running.server_id, exit_code=code)
        async with self._lock:
            if self._processes.get(running.server_id) is running and not running.stopping:
                del self._processes[running.server_id]
