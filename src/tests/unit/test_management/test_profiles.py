"""Tests for profile switching and reconciliation."""

import sys

import pytest

from mcp_relay.exceptions import ProfileNotFoundError
from mcp_relay.management.profiles import ProfileReconciler
from mcp_relay.management.server_registry import ServerRegistry
from mcp_relay.metering import TrafficMeter
from mcp_relay.vault import SecretInjector


class TestProfileReconciler:
    """Test the ProfileReconciler class against a real store."""

    @pytest.fixture(autouse=True)
    def setup_reconciler(self, store, memory_vault, relay_settings, demo_server):
        self.store = store
        self.demo_server = demo_server
        self.registry = ServerRegistry(
            store, SecretInjector(memory_vault), TrafficMeter(), settings=relay_settings
        )
        self.reconciler = ProfileReconciler(store, self.registry)

    async def add_demo(self, name, profile_id, enabled=True):
        return await self.store.create_server(
            name,
            sys.executable,
            args=[self.demo_server],
            profile_id=profile_id,
            enabled=enabled,
        )

    @pytest.mark.asyncio
    async def test_sync_starts_enabled_servers_of_active_profile(self):
        await self.store.initialize()
        work = await self.store.create_profile("Work")
        enabled = await self.add_demo("enabled", "default")
        await self.add_demo("disabled", "default", enabled=False)
        await self.add_demo("elsewhere", work.id)

        try:
            result = await self.reconciler.sync()

            assert result.started == [enabled.id]
            assert self.registry.running_ids() == [enabled.id]
        finally:
            await self.registry.stop_all()

    @pytest.mark.asyncio
    async def test_switch_profile_replaces_running_set(self):
        await self.store.initialize()
        work = await self.store.create_profile("Work")
        home_server = await self.add_demo("home", "default")
        work_server = await self.add_demo("work", work.id)

        try:
            await self.reconciler.sync()
            old_pid = self.registry.get(home_server.id).pid

            result = await self.reconciler.switch_profile(work.id)

            assert result.stopped == [home_server.id]
            assert result.started == [work_server.id]
            assert self.registry.running_ids() == [work_server.id]
            assert await self.store.get_active_profile() == work.id
            assert self.registry.get(work_server.id).pid != old_pid
        finally:
            await self.registry.stop_all()

    @pytest.mark.asyncio
    async def test_switch_to_same_profile_restarts_servers(self):
        await self.store.initialize()
        server = await self.add_demo("home", "default")

        try:
            await self.reconciler.sync()
            old_pid = self.registry.get(server.id).pid

            result = await self.reconciler.switch_profile("default")

            assert result.stopped == [server.id]
            assert result.started == [server.id]
            assert self.registry.get(server.id).pid != old_pid
        finally:
            await self.registry.stop_all()

    @pytest.mark.asyncio
    async def test_switch_to_unknown_profile_changes_nothing(self):
        await self.store.initialize()
        server = await self.add_demo("home", "default")

        try:
            await self.reconciler.sync()

            with pytest.raises(ProfileNotFoundError):
                await self.reconciler.switch_profile("missing")

            assert self.registry.running_ids() == [server.id]
            assert await self.store.get_active_profile() == "default"
        finally:
            await self.registry.stop_all()

    @pytest.mark.asyncio
    async def test_failed_server_is_left_out(self):
        await self.store.initialize()
        good = await self.add_demo("good", "default")
        bad = await self.store.create_server(
            "bad", "/nonexistent/relay-server", profile_id="default", enabled=True
        )

        try:
            result = await self.reconciler.sync()

            assert result.started == [good.id]
            assert list(result.failed) == [bad.id]
            assert self.registry.running_ids() == [good.id]
        finally:
            await self.registry.stop_all()
