"""Profile-scoped reconciliation of the running server set."""

import asyncio
from typing import List, Optional, Protocol

import structlog

from ..exceptions import ProfileNotFoundError
from ..models import Profile, ServerDefinition
from .server_registry import ReconcileResult, ServerRegistry

logger = structlog.get_logger(__name__)


class ProfileSource(Protocol):
    async def list_enabled_servers(self, profile_id: str) -> List[ServerDefinition]: ...

    async def get_profile(self, profile_id: str) -> Optional[Profile]: ...

    async def get_active_profile(self) -> str: ...

    async def set_active_profile(self, profile_id: str) -> None: ...


class ProfileReconciler:
    """Keep the registry's running set equal to the active profile's enabled servers."""

    def __init__(self, store: ProfileSource, registry: ServerRegistry):
        self.store = store
        self.registry = registry
        self._lock = asyncio.Lock()

    async def desired_ids(self, profile_id: str) -> List[str]:
        return [d.id for d in await self.store.list_enabled_servers(profile_id)]

    async def sync(self) -> ReconcileResult:
        """Reconcile the active profile without draining first."""
        async with self._lock:
            profile_id = await self.store.get_active_profile()
            result = await self.registry.reconcile(await self.desired_ids(profile_id))
            logger.info("Synced active profile", profile_id=profile_id, running=len(self.registry.running_ids()))
            return result

    async def switch_profile(self, profile_id: str) -> ReconcileResult:
        """Activate a profile: stop everything, then start its enabled servers.

        Draining before reconciling means two profiles never have live
        processes at the same time, at the cost of a short window with no
        servers running.

        Raises:
            ProfileNotFoundError: the profile does not exist
        """
        async with self._lock:
            if await self.store.get_profile(profile_id) is None:
                raise ProfileNotFoundError(profile_id)
            await self.store.set_active_profile(profile_id)

            drained = await self.registry.stop_all()
            logger.info("Drained running servers", profile_id=profile_id, stopped=drained)

            result = await self.registry.reconcile(await self.desired_ids(profile_id))
            result.stopped = drained + result.stopped
            return result
