"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from mcp_relay.config.settings import (
    ProcessConfig,
    ProtocolConfig,
    RelaySettings,
    SecretsConfig,
    StorageConfig,
)
from mcp_relay.models import Profile, ServerDefinition
from mcp_relay.storage import DefinitionStore
from mcp_relay.vault import MemoryVault, SecretInjector

DEMO_SERVER = Path(__file__).parent / "fixtures" / "demo_server.py"


@pytest.fixture
def demo_server() -> str:
    """Path of the stdio demo server script."""
    return str(DEMO_SERVER)


@pytest.fixture
def relay_settings(tmp_path) -> RelaySettings:
    """Settings pointing at a temporary data dir with short timeouts."""
    return RelaySettings(
        data_dir=str(tmp_path),
        storage=StorageConfig(path="relay.db"),
        secrets=SecretsConfig(backend="memory"),
        protocol=ProtocolConfig(
            initialize_timeout=10.0, list_timeout=10.0, call_timeout=10.0
        ),
        process=ProcessConfig(stop_timeout=2.0),
    )


@pytest.fixture
def memory_vault() -> MemoryVault:
    return MemoryVault()


@pytest.fixture
def injector(memory_vault) -> SecretInjector:
    return SecretInjector(memory_vault)


@pytest.fixture
def store(tmp_path) -> DefinitionStore:
    """Definition store on a temporary file; call ``initialize()`` in the test."""
    return DefinitionStore(tmp_path / "relay.db")


@pytest.fixture
def demo_definition(demo_server):
    """Factory for definitions that run the demo server."""

    def factory(
        server_id: str = "demo",
        env: Optional[Dict[str, str]] = None,
        secrets: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> ServerDefinition:
        return ServerDefinition(
            id=server_id,
            name=kwargs.pop("name", server_id),
            command=sys.executable,
            args=[demo_server],
            env=env or {},
            secrets=secrets or [],
            enabled=kwargs.pop("enabled", True),
            **kwargs,
        )

    return factory


class FakeStore:
    """In-memory stand-in for the definition store."""

    def __init__(self, definitions=(), active_profile: str = "default"):
        self.definitions = {d.id: d for d in definitions}
        self.profiles = {"default"} | {d.profile_id for d in definitions}
        self.active_profile = active_profile

    async def get_server(self, server_id):
        return self.definitions.get(server_id)

    async def list_enabled_servers(self, profile_id):
        return [
            d
            for d in self.definitions.values()
            if d.enabled and d.profile_id == profile_id
        ]

    async def get_profile(self, profile_id):
        if profile_id not in self.profiles:
            return None
        return Profile(id=profile_id, name=profile_id)

    async def get_active_profile(self):
        return self.active_profile

    async def set_active_profile(self, profile_id):
        self.active_profile = profile_id


@pytest.fixture
def fake_store_factory():
    return FakeStore
