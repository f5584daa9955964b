"""Tests for ephemeral tool inspection against the demo server."""

import asyncio
from unittest.mock import patch

import pytest

from mcp_relay.config.settings import ProtocolConfig
from mcp_relay.exceptions import (
    ParseError,
    ProtocolError,
    ProtocolTimeoutError,
    ServerNotFoundError,
)
from mcp_relay.management import inspector as inspector_module
from mcp_relay.management.inspector import ToolInspector
from mcp_relay.management.process import is_alive
from mcp_relay.metering import TrafficMeter
from mcp_relay.vault import SecretInjector


class TestToolInspector:
    """Test the ToolInspector class."""

    @pytest.fixture(autouse=True)
    def setup_inspector(self, demo_definition, memory_vault, relay_settings):
        self.demo_definition = demo_definition
        self.vault = memory_vault
        self.settings = relay_settings
        self.meter = TrafficMeter()
        self.launched = []

    @pytest.fixture
    def inspector_for(self, fake_store_factory):
        def factory(*definitions):
            return ToolInspector(
                fake_store_factory(definitions),
                SecretInjector(self.vault),
                self.meter,
                self.settings,
            )

        return factory

    @pytest.fixture(autouse=True)
    def capture_launch(self):
        real_launch = inspector_module.launch

        async def recording_launch(*args, **kwargs):
            process = await real_launch(*args, **kwargs)
            self.launched.append(process)
            return process

        with patch.object(inspector_module, "launch", recording_launch):
            yield

    def assert_processes_dead(self):
        assert self.launched
        for process in self.launched:
            assert process.returncode is not None
            assert not is_alive(process.pid)

    @pytest.mark.asyncio
    async def test_list_tools(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo"))

        result = await inspector.list_tools("demo")

        assert [tool["name"] for tool in result["tools"]] == ["echo", "token"]
        self.assert_processes_dead()

    @pytest.mark.asyncio
    async def test_call_tool_with_injected_secret(self, inspector_for):
        self.vault.set("demo", "TOKEN", "abc")
        inspector = inspector_for(self.demo_definition("demo", secrets=["TOKEN"]))

        result = await inspector.call_tool("demo", "token", {})

        assert result == {"content": [{"type": "text", "text": "abc"}]}
        self.assert_processes_dead()

    @pytest.mark.asyncio
    async def test_each_call_uses_a_fresh_process(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo"))

        await inspector.call_tool("demo", "echo", {"text": "one"})
        await inspector.call_tool("demo", "echo", {"text": "two"})

        assert len(self.launched) == 2
        assert self.launched[0].pid != self.launched[1].pid
        self.assert_processes_dead()

    @pytest.mark.asyncio
    async def test_noise_within_budget_is_skipped(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo", env={"DEMO_NOISE": "19"}))

        result = await inspector.list_tools("demo")

        assert len(result["tools"]) == 2

    @pytest.mark.asyncio
    async def test_noise_past_budget_fails_and_kills_process(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo", env={"DEMO_NOISE": "20"}))

        with pytest.raises(ParseError):
            await inspector.list_tools("demo")

        self.assert_processes_dead()

    @pytest.mark.asyncio
    async def test_peer_error_surfaces_and_kills_process(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo", env={"DEMO_MODE": "error"}))

        with pytest.raises(ProtocolError) as exc_info:
            await inspector.list_tools("demo")

        assert exc_info.value.code == -32603
        self.assert_processes_dead()

    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_protocol_error(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo"))

        with pytest.raises(ProtocolError):
            await inspector.call_tool("demo", "missing", {})

        self.assert_processes_dead()

    @pytest.mark.asyncio
    async def test_silent_server_times_out(self, inspector_for):
        self.settings.protocol = ProtocolConfig(initialize_timeout=0.5, line_wait=0.1)
        inspector = inspector_for(self.demo_definition("demo", env={"DEMO_MODE": "silent"}))

        with pytest.raises(ProtocolTimeoutError):
            await inspector.list_tools("demo")

        self.assert_processes_dead()

    @pytest.mark.asyncio
    async def test_unknown_server(self, inspector_for):
        inspector = inspector_for()

        with pytest.raises(ServerNotFoundError):
            await inspector.list_tools("nope")

        assert self.launched == []

    @pytest.mark.asyncio
    async def test_traffic_is_metered(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo"))

        await inspector.list_tools("demo")

        snapshot = self.meter.snapshot("demo")
        # initialize, notifications/initialized, tools/list
        assert snapshot.messages_out == 3
        assert snapshot.messages_in == 2
        assert snapshot.total_tokens > 0

    @pytest.mark.asyncio
    async def test_stderr_reader_finished_after_teardown(self, inspector_for):
        inspector = inspector_for(self.demo_definition("demo", env={"DEMO_STDERR": "2000"}))

        result = await inspector.list_tools("demo")

        assert len(result["tools"]) == 2
        readers = [
            task
            for task in asyncio.all_tasks()
            if getattr(task.get_coro(), "__qualname__", "") == "_collect_stderr"
        ]
        assert readers == []
        self.assert_processes_dead()
