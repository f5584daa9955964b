"""Client configuration export (the ``mcpServers`` JSON used by MCP clients)."""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Union

import structlog

from ..exceptions import ConfigurationError
from ..models import ServerDefinition

logger = structlog.get_logger(__name__)


def server_entry(definition: ServerDefinition) -> Dict[str, Any]:
    """Client entry for one server.

    Only the plain environment is exported. Keys listed as secrets are
    dropped so vault values never end up in a client file.
    """
    entry: Dict[str, Any] = {"command": definition.command, "args": list(definition.args)}
    env = {k: v for k, v in definition.env.items() if k not in definition.secrets}
    if env:
        entry["env"] = env
    return entry


def build_client_config(servers: Iterable[ServerDefinition]) -> Dict[str, Any]:
    return {"mcpServers": {s.name: server_entry(s) for s in servers}}


def read_client_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a client config file; a missing file reads as no servers."""
    path = Path(path)
    if not path.exists():
        return {"mcpServers": {}}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigurationError(
            f"Failed to parse config file {path}: {e}",
            suggestion="Fix or remove the file before exporting into it",
        ) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} does not contain a JSON object")
    return data


def write_client_config(path: Union[str, Path], config: Dict[str, Any]) -> Path:
    """Replace the ``mcpServers`` section of a client config file.

    Other top-level keys of an existing file are kept.
    """
    path = Path(path).expanduser()
    data = read_client_config(path)
    data["mcpServers"] = config["mcpServers"]

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to write config file {path}: {e}") from e
    logger.info("Client config written", path=str(path), servers=len(config["mcpServers"]))
    return path
