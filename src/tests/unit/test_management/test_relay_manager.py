"""Tests for the relay manager facade."""

import sys

import pytest

from mcp_relay.events import USAGE_TOPIC
from mcp_relay.exceptions import ServerNotFoundError
from mcp_relay.management.process import is_alive
from mcp_relay.management.server_manager import RelayManager
from mcp_relay.management.server_registry import ReconcileResult


class TestRelayManager:
    """Test the RelayManager class end to end with the demo server."""

    @pytest.fixture(autouse=True)
    def setup_manager(self, relay_settings, memory_vault, demo_server):
        self.settings = relay_settings
        self.manager = RelayManager(relay_settings, vault=memory_vault)
        self.vault = memory_vault
        self.demo_server = demo_server

    async def add_demo(self, name="demo", **fields):
        return await self.manager.create_server(
            name, sys.executable, args=[self.demo_server], **fields
        )

    @pytest.mark.asyncio
    async def test_start_runs_enabled_servers(self):
        await self.manager.initialize()
        enabled = await self.add_demo("on", enabled=True)
        await self.add_demo("off")

        try:
            result = await self.manager.start()

            assert result.started == [enabled.id]
            status = await self.manager.status()
            assert status["active_profile"] == "default"
            assert [s["server_id"] for s in status["running"]] == [enabled.id]
        finally:
            stopped = await self.manager.shutdown()

        assert stopped == [enabled.id]
        assert self.manager.registry.running_ids() == []

    @pytest.mark.asyncio
    async def test_definition_changes_do_not_spawn_before_start(self):
        await self.manager.initialize()
        definition = await self.add_demo(enabled=True)

        await self.manager.toggle_server(definition.id, True)

        assert self.manager.registry.running_ids() == []

    @pytest.mark.asyncio
    async def test_toggle_server_starts_and_stops(self):
        await self.manager.start()
        definition = await self.add_demo()
        try:
            enabled = await self.manager.toggle_server(definition.id, True)
            assert enabled.enabled is True
            pid = self.manager.registry.get(definition.id).pid

            disabled = await self.manager.toggle_server(definition.id, False)

            assert disabled.enabled is False
            assert not self.manager.registry.is_running(definition.id)
            assert not is_alive(pid)
        finally:
            await self.manager.shutdown()

    @pytest.mark.asyncio
    async def test_enable_outside_active_profile_does_not_spawn(self):
        await self.manager.start()
        work = await self.manager.create_profile("Work")
        definition = await self.add_demo(profile_id=work.id)
        try:
            await self.manager.toggle_server(definition.id, True)

            assert self.manager.registry.running_ids() == []
        finally:
            await self.manager.shutdown()

    @pytest.mark.asyncio
    async def test_update_restarts_running_server(self):
        await self.manager.start()
        definition = await self.add_demo(enabled=True)
        try:
            old_pid = self.manager.registry.get(definition.id).pid

            updated = await self.manager.update_server(definition.id, env={"MODE": "x"})

            assert updated.env == {"MODE": "x"}
            assert self.manager.registry.get(definition.id).pid != old_pid
        finally:
            await self.manager.shutdown()

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_field(self):
        await self.manager.initialize()
        definition = await self.add_demo()

        with pytest.raises(ValueError):
            await self.manager.update_server(definition.id, color="blue")

    @pytest.mark.asyncio
    async def test_delete_server_removes_secrets_and_definition(self):
        await self.manager.start()
        definition = await self.add_demo(enabled=True)
        await self.manager.set_secret(definition.id, "TOKEN", "abc")
        try:
            await self.manager.delete_server(definition.id)

            assert not self.manager.registry.is_running(definition.id)
            assert self.vault.get(definition.id, "TOKEN") is None
            with pytest.raises(ServerNotFoundError):
                await self.manager.get_server(definition.id)
        finally:
            await self.manager.shutdown()

    @pytest.mark.asyncio
    async def test_secrets_are_tracked_on_definition(self):
        await self.manager.initialize()
        definition = await self.add_demo()

        await self.manager.set_secret(definition.id, "TOKEN", "abc")
        await self.manager.set_secret(definition.id, "TOKEN", "def")
        assert (await self.manager.get_server(definition.id)).secrets == ["TOKEN"]
        assert self.vault.get(definition.id, "TOKEN") == "def"

        await self.manager.delete_secret(definition.id, "TOKEN")
        assert (await self.manager.get_server(definition.id)).secrets == []
        assert self.vault.get(definition.id, "TOKEN") is None

    @pytest.mark.asyncio
    async def test_call_tool_uses_stored_secret_and_meters(self):
        await self.manager.initialize()
        usage = []
        self.manager.events.subscribe(USAGE_TOPIC, usage.append)
        definition = await self.add_demo()
        await self.manager.set_secret(definition.id, "TOKEN", "from-vault")

        tools = await self.manager.list_tools(definition.id)
        result = await self.manager.call_tool(definition.id, "token")

        assert len(tools["tools"]) == 2
        assert result["content"][0]["text"] == "from-vault"
        assert usage and usage[-1]["serverId"] == definition.id
        assert self.manager.registry.running_ids() == []

    @pytest.mark.asyncio
    async def test_switch_profile(self):
        await self.manager.start()
        work = await self.manager.create_profile("Work")
        home = await self.add_demo("home", enabled=True)
        office = await self.add_demo("office", profile_id=work.id, enabled=True)
        try:
            assert self.manager.registry.running_ids() == [home.id]

            result = await self.manager.switch_profile(work.id)

            assert result.stopped == [home.id]
            assert self.manager.registry.running_ids() == [office.id]
        finally:
            await self.manager.shutdown()

    @pytest.mark.asyncio
    async def test_detect_conflicts_in_active_profile(self):
        await self.manager.initialize()
        await self.add_demo("one", enabled=True)
        await self.add_demo("two", enabled=True)
        await self.add_demo("three")

        conflicts = await self.manager.detect_conflicts()

        assert len(conflicts) == 1
        assert sorted(name for _, name in conflicts[0].servers) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_test_server(self):
        await self.manager.initialize()
        definition = await self.add_demo()

        result = await self.manager.test_server(definition.id)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_switch_profile_before_start_only_persists(self):
        await self.manager.initialize()
        work = await self.manager.create_profile("Work")
        await self.add_demo("office", profile_id=work.id, enabled=True)

        result = await self.manager.switch_profile(work.id)

        assert result.started == []
        assert self.manager.registry.running_ids() == []
        assert await self.manager.store.get_active_profile() == work.id

    @pytest.mark.asyncio
    async def test_update_moving_server_out_of_active_profile_stops_it(self):
        await self.manager.start()
        work = await self.manager.create_profile("Work")
        definition = await self.add_demo(enabled=True)
        try:
            pid = self.manager.registry.get(definition.id).pid

            updated = await self.manager.update_server(definition.id, profile_id=work.id)

            assert updated.profile_id == work.id
            assert self.manager.registry.get(definition.id) is None
            assert not is_alive(pid)
        finally:
            await self.manager.shutdown()

    @pytest.mark.asyncio
    async def test_update_moving_server_into_active_profile_starts_it(self):
        await self.manager.start()
        work = await self.manager.create_profile("Work")
        definition = await self.add_demo(profile_id=work.id, enabled=True)
        try:
            assert self.manager.registry.running_ids() == []

            await self.manager.update_server(definition.id, profile_id="default")

            assert self.manager.registry.running_ids() == [definition.id]
        finally:
            await self.manager.shutdown()

    @pytest.mark.asyncio
    async def test_export_config_excludes_secret_values(self):
        await self.manager.initialize()
        alpha = await self.add_demo("alpha", enabled=True, env={"MODE": "x"})
        await self.manager.set_secret(alpha.id, "TOKEN", "hidden")
        await self.add_demo("beta", enabled=True)
        await self.add_demo("off")

        config = await self.manager.export_config()

        assert config == {
            "mcpServers": {
                "alpha": {
                    "command": sys.executable,
                    "args": [self.demo_server],
                    "env": {"MODE": "x"},
                },
                "beta": {"command": sys.executable, "args": [self.demo_server]},
            }
        }
        assert "hidden" not in str(config)

    @pytest.mark.asyncio
    async def test_export_config_for_other_profile(self):
        await self.manager.initialize()
        work = await self.manager.create_profile("Work")
        await self.add_demo("home", enabled=True)
        await self.add_demo("office", profile_id=work.id, enabled=True)

        config = await self.manager.export_config(work.id)

        assert list(config["mcpServers"]) == ["office"]


class TestSupervisorRefresh:
    """A started manager picks up changes another manager writes to the same store."""

    @pytest.fixture(autouse=True)
    def setup_managers(self, relay_settings, memory_vault, demo_server):
        self.supervisor = RelayManager(relay_settings, vault=memory_vault)
        self.cli = RelayManager(relay_settings, vault=memory_vault)
        self.demo_server = demo_server

    async def add_demo(self, name="demo", **fields):
        return await self.cli.create_server(
            name, sys.executable, args=[self.demo_server], **fields
        )

    @pytest.mark.asyncio
    async def test_refresh_without_changes_is_a_no_op(self):
        await self.cli.initialize()
        await self.add_demo(enabled=True)
        await self.supervisor.start()
        try:
            assert await self.supervisor.refresh() == ReconcileResult()
        finally:
            await self.supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_disable_from_another_manager_stops_process(self):
        await self.cli.initialize()
        definition = await self.add_demo(enabled=True)
        await self.supervisor.start()
        try:
            pid = self.supervisor.registry.get(definition.id).pid

            await self.cli.toggle_server(definition.id, False)
            result = await self.supervisor.refresh()

            assert result.stopped == [definition.id]
            assert self.supervisor.registry.running_ids() == []
            assert not is_alive(pid)
        finally:
            await self.supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_delete_from_another_manager_stops_process(self):
        await self.cli.initialize()
        definition = await self.add_demo(enabled=True)
        await self.supervisor.start()
        try:
            await self.cli.delete_server(definition.id)
            await self.supervisor.refresh()

            assert self.supervisor.registry.running_ids() == []
        finally:
            await self.supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_profile_switch_from_another_manager(self):
        await self.cli.initialize()
        home = await self.add_demo("home", enabled=True)
        await self.supervisor.start()
        try:
            other = await self.cli.create_profile("Other")
            office = await self.add_demo("office", profile_id=other.id, enabled=True)
            await self.cli.switch_profile(other.id)

            result = await self.supervisor.refresh()

            assert result.stopped == [home.id]
            assert result.started == [office.id]
            assert self.supervisor.registry.running_ids() == [office.id]
        finally:
            await self.supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_enable_and_edit_from_another_manager(self):
        await self.cli.initialize()
        definition = await self.add_demo()
        await self.supervisor.start()
        try:
            await self.cli.toggle_server(definition.id, True)
            result = await self.supervisor.refresh()
            assert result.started == [definition.id]
            old_pid = self.supervisor.registry.get(definition.id).pid

            await self.cli.update_server(definition.id, env={"MODE": "changed"})
            await self.supervisor.refresh()

            assert self.supervisor.registry.get(definition.id).pid != old_pid
            assert not is_alive(old_pid)
        finally:
            await self.supervisor.shutdown()
