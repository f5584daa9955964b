"""Secret vault backends and spawn-time secret injection."""

import threading
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

import keyring
import structlog
from keyring.errors import KeyringError, PasswordDeleteError

from .exceptions import SecretUnavailableError

logger = structlog.get_logger(__name__)

FAIL_OPEN = "fail_open"
FAIL_CLOSED = "fail_closed"


class SecretVault(Protocol):
    """Opaque key/value store scoped by server id and key name."""

    def get(self, server_id: str, key: str) -> Optional[str]: ...

    def set(self, server_id: str, key: str, value: str) -> None: ...

    def delete(self, server_id: str, key: str) -> None: ...


class KeyringVault:
    """Vault backed by the operating system keyring.

    Each server gets its own service name, ``<prefix>.<server_id>``, with
    one entry per secret key.
    """

    def __init__(self, service_prefix: str = "mcp-relay.server"):
        self.service_prefix = service_prefix

    def _service(self, server_id: str) -> str:
        return f"{self.service_prefix}.{server_id}"

    def get(self, server_id: str, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self._service(server_id), key)
        except KeyringError as e:
            logger.warning(
                "Keyring lookup failed", server_id=server_id, key=key, error=str(e)
            )
            return None

    def set(self, server_id: str, key: str, value: str) -> None:
        keyring.set_password(self._service(server_id), key, value)

    def delete(self, server_id: str, key: str) -> None:
        try:
            keyring.delete_password(self._service(server_id), key)
        except PasswordDeleteError:
            logger.debug("Secret already absent", server_id=server_id, key=key)

    def delete_all(self, server_id: str, keys: Iterable[str]) -> None:
        for key in keys:
            try:
                self.delete(server_id, key)
            except KeyringError as e:
                logger.warning(
                    "Failed to delete secret", server_id=server_id, key=key, error=str(e)
                )


class MemoryVault:
    """In-process vault, used for tests and keyring-less hosts."""

    def __init__(self, initial: Optional[Mapping[Tuple[str, str], str]] = None):
        self._values: Dict[Tuple[str, str], str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, server_id: str, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get((server_id, key))

    def set(self, server_id: str, key: str, value: str) -> None:
        with self._lock:
            self._values[(server_id, key)] = value

    def delete(self, server_id: str, key: str) -> None:
        with self._lock:
            self._values.pop((server_id, key), None)

    def delete_all(self, server_id: str, keys: Iterable[str]) -> None:
        for key in keys:
            self.delete(server_id, key)


def create_vault(backend: str, service_prefix: str = "mcp-relay.server") -> SecretVault:
    """Build the vault configured by ``secrets.backend``."""
    if backend == "memory":
        return MemoryVault()
    return KeyringVault(service_prefix)


class SecretInjector:
    """Resolve secret key names to values at spawn time.

    With the ``fail_open`` policy a key missing from the vault is left out
    of the environment and the spawn goes ahead. ``fail_closed`` refuses to
    build the environment instead.
    """

    def __init__(self, vault: SecretVault, policy: str = FAIL_OPEN):
        if policy not in (FAIL_OPEN, FAIL_CLOSED):
            raise ValueError(f"Unknown secret policy: {policy}")
        self.vault = vault
        self.policy = policy

    def resolve(
        self,
        server_id: str,
        secret_keys: Iterable[str],
        base_env: Optional[Mapping[str, str]] = None,
        skip_present: bool = False,
    ) -> Dict[str, str]:
        """Return a copy of ``base_env`` with vault values merged in.

        Args:
            server_id: Vault scope
            secret_keys: Key names to look up
            base_env: Environment from the server definition
            skip_present: Keep values already in ``base_env`` instead of
                looking them up

        Raises:
            SecretUnavailableError: a key is absent and the policy is fail-closed
        """
        env = dict(base_env or {})
        missing: List[str] = []

        for key in secret_keys:
            if skip_present and key in env:
                continue
            value = self.vault.get(server_id, key)
            if value is None:
                missing.append(key)
                continue
            env[key] = value

        if missing:
            if self.policy == FAIL_CLOSED:
                raise SecretUnavailableError(server_id, missing)
            logger.debug(
                "Secrets not found in vault, omitting",
                server_id=server_id,
                keys=missing,
            )

        return env
