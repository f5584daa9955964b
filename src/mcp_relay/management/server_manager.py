"""Relay manager coordinating definitions, secrets and supervised processes."""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

from ..config.settings import RelaySettings
from ..events import EventBus
from ..exceptions import ServerNotFoundError
from ..metering import TrafficMeter
from ..models import Profile, ServerDefinition
from ..storage import DefinitionStore
from ..vault import SecretInjector, SecretVault, create_vault
from .conflicts import ToolConflict, detect_tool_conflicts
from .diagnostics import ConnectionTestResult, test_connection
from .export import build_client_config, write_client_config
from .inspector import ToolInspector
from .pidfile import signal_supervisor
from .profiles import ProfileReconciler
from .server_registry import ReconcileResult, ServerRegistry

logger = structlog.get_logger(__name__)


class RelayManager:
    """Main manager wiring the store, vault, registry and inspector together.

    The CLI talks to this class only. Changes to definitions are persisted
    first and then reflected on the running set.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        store: Optional[DefinitionStore] = None,
        vault: Optional[SecretVault] = None,
        events: Optional[EventBus] = None,
    ):
        """Initialize relay manager.

        Args:
            settings: Application settings (default: environment/defaults)
            store: Definition store (default: SQLite file from settings)
            vault: Secret vault (default: backend from settings)
            events: Event bus for usage and log events
        """
        self.settings = settings or RelaySettings()
        self.store = store or DefinitionStore(self.settings.get_database_path())
        self.vault = vault or create_vault(
            self.settings.secrets.backend, self.settings.secrets.service_prefix
        )
        self.events = events or EventBus()
        self.injector = SecretInjector(self.vault, self.settings.secrets.policy)
        self.meter = TrafficMeter(self.events)
        self.registry = ServerRegistry(
            self.store, self.injector, self.meter, self.events, self.settings
        )
        self.inspector = ToolInspector(self.store, self.injector, self.meter, self.settings)
        self.reconciler = ProfileReconciler(self.store, self.registry)
        self._started = False
        self._synced: Optional[Tuple[str, Dict[str, str]]] = None

    async def initialize(self) -> None:
        """Prepare the store without starting any process."""
        await self.store.initialize()

    async def start(self) -> ReconcileResult:
        """Start metering and bring up the active profile's enabled servers."""
        await self.initialize()
        self.meter.start()
        self._started = True
        result = await self.reconciler.sync()
        self._synced = await self._store_state()
        logger.info("Relay started", running=self.registry.running_ids())
        return result

    async def shutdown(self) -> List[str]:
        """Stop every supervised process and the metering task."""
        stopped = await self.registry.stop_all()
        if self._started:
            await self.meter.stop()
            self._started = False
            self._synced = None
        logger.info("Relay shut down", stopped=stopped)
        return stopped

    async def refresh(self) -> ReconcileResult:
        """Pick up definition changes made by other processes sharing the store.

        The active profile and the enabled definitions are compared with what
        was seen at the last sync. When they differ the running set is
        reconciled and running servers whose definitions changed are
        restarted. Servers that exited on their own are not respawned by an
        unchanged store.
        """
        if not self._started:
            return ReconcileResult()

        state = await self._store_state()
        if state == self._synced:
            return ReconcileResult()

        previous = self._synced[1] if self._synced else {}
        result = await self.reconciler.sync()
        for server_id, updated_at in state[1].items():
            if server_id in result.started or not self.registry.is_running(server_id):
                continue
            if previous.get(server_id) not in (None, updated_at):
                await self.registry.restart(server_id)
                logger.info("Restarted changed server", server_id=server_id)

        self._synced = state
        return result

    async def _store_state(self) -> Tuple[str, Dict[str, str]]:
        active = await self.store.get_active_profile()
        enabled = await self.store.list_enabled_servers(active)
        return active, {d.id: d.updated_at for d in enabled}

    async def _changed(self) -> None:
        # A started manager already applied the change itself.
        if self._started:
            self._synced = await self._store_state()
        else:
            signal_supervisor(self.settings.get_pid_file_path())

    # ------------------------------------------------------------------
    # Server definitions
    # ------------------------------------------------------------------

    async def list_servers(self, profile_id: Optional[str] = None) -> List[ServerDefinition]:
        return await self.store.list_servers(profile_id)

    async def get_server(self, server_id: str) -> ServerDefinition:
        definition = await self.store.get_server(server_id)
        if definition is None:
            raise ServerNotFoundError(server_id)
        return definition

    async def create_server(self, name: str, command: str, **fields: Any) -> ServerDefinition:
        """Persist a new definition and start it if it was created enabled."""
        definition = await self.store.create_server(name, command, **fields)
        if definition.enabled and await self._should_run(definition):
            await self.registry.spawn(definition)
        await self._changed()
        return definition

    async def update_server(self, server_id: str, **changes: Any) -> ServerDefinition:
        """Apply field changes and bring the running set in line with them.

        A running server is restarted to pick the changes up, or stopped when
        it is no longer enabled in the active profile.
        """
        definition = await self.get_server(server_id)
        for key, value in changes.items():
            if not hasattr(definition, key) or key in ("id", "created_at"):
                raise ValueError(f"Unknown server field: {key}")
            setattr(definition, key, value)
        definition = await self.store.update_server(definition)

        wanted = definition.enabled and await self._should_run(definition)
        if self.registry.is_running(server_id):
            if wanted:
                await self.registry.restart(server_id)
            else:
                await self.registry.stop(server_id)
        elif wanted:
            await self.registry.spawn(definition)
        await self._changed()
        return definition

    async def toggle_server(self, server_id: str, enabled: bool) -> ServerDefinition:
        """Enable or disable a server and start or stop it accordingly."""
        definition = await self.get_server(server_id)

        if not enabled:
            # Stop first so a failing stop never leaves a disabled server running.
            await self.registry.stop(server_id)
            definition = await self.store.set_enabled(server_id, False)
        else:
            definition = await self.store.set_enabled(server_id, True)
            if await self._should_run(definition):
                await self.registry.spawn(definition)
        await self._changed()
        return definition

    async def delete_server(self, server_id: str) -> None:
        """Stop a server, forget its secrets and remove its definition."""
        definition = await self.get_server(server_id)
        await self.registry.stop(server_id)
        await asyncio.to_thread(self._delete_secrets, server_id, definition.secrets)
        await self.store.delete_server(server_id)
        self.meter.reset(server_id)
        await self._changed()
        logger.info("Server deleted", server_id=server_id)

    async def _should_run(self, definition: ServerDefinition) -> bool:
        # Unstarted managers only persist; a running supervisor picks changes up in refresh().
        if not self._started:
            return False
        return definition.profile_id == await self.store.get_active_profile()

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    async def set_secret(self, server_id: str, key: str, value: str) -> None:
        """Store a secret value and record its key name on the definition."""
        definition = await self.get_server(server_id)
        await asyncio.to_thread(self.vault.set, server_id, key, value)
        if key not in definition.secrets:
            definition.secrets.append(key)
            await self.store.update_server(definition)
        logger.info("Secret stored", server_id=server_id, key=key)

    async def delete_secret(self, server_id: str, key: str) -> None:
        definition = await self.get_server(server_id)
        await asyncio.to_thread(self.vault.delete, server_id, key)
        if key in definition.secrets:
            definition.secrets.remove(key)
            await self.store.update_server(definition)
        logger.info("Secret deleted", server_id=server_id, key=key)

    def _delete_secrets(self, server_id: str, keys: List[str]) -> None:
        delete_all = getattr(self.vault, "delete_all", None)
        if delete_all is not None:
            delete_all(server_id, keys)
            return
        for key in keys:
            self.vault.delete(server_id, key)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def list_tools(self, server_id: str) -> Dict[str, Any]:
        return await self.inspector.list_tools(server_id)

    async def call_tool(
        self, server_id: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return await self.inspector.call_tool(server_id, tool_name, arguments)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def list_profiles(self) -> List[Profile]:
        return await self.store.list_profiles()

    async def create_profile(self, name: str) -> Profile:
        return await self.store.create_profile(name)

    async def switch_profile(self, profile_id: str) -> ReconcileResult:
        """Activate a profile; when running, also swap the supervised set."""
        if self._started:
            result = await self.reconciler.switch_profile(profile_id)
        else:
            await self.store.set_active_profile(profile_id)
            result = ReconcileResult()
        await self._changed()
        return result

    # ------------------------------------------------------------------
    # Client config export
    # ------------------------------------------------------------------

    async def export_config(self, profile_id: Optional[str] = None) -> Dict[str, Any]:
        """``mcpServers`` config for the enabled servers of a profile (default: active)."""
        if profile_id is None:
            profile_id = await self.store.get_active_profile()
        return build_client_config(await self.store.list_enabled_servers(profile_id))

    async def export_to_file(
        self, path: Union[str, Path], profile_id: Optional[str] = None
    ) -> Path:
        """Write the exported servers into a client config file."""
        config = await self.export_config(profile_id)
        return await asyncio.to_thread(write_client_config, path, config)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def test_server(self, server_id: str) -> ConnectionTestResult:
        """Run a connection test against a stored definition."""
        definition = await self.get_server(server_id)
        return await test_connection(
            definition.command,
            definition.args,
            env=definition.env,
            secrets=definition.secrets,
            server_id=definition.id,
            injector=self.injector,
            settings=self.settings,
        )

    async def detect_conflicts(self, profile_id: Optional[str] = None) -> List[ToolConflict]:
        """Report enabled servers in a profile that share a command line."""
        if profile_id is None:
            profile_id = await self.store.get_active_profile()
        return detect_tool_conflicts(await self.store.list_enabled_servers(profile_id))

    async def status(self) -> Dict[str, Any]:
        """Active profile, running servers and their usage counters."""
        return {
            "active_profile": await self.store.get_active_profile(),
            "running": self.registry.list_status(),
            "usage": [snapshot.to_event() for snapshot in self.meter.snapshots()],
        }
