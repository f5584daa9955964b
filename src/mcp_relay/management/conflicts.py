"""Detect servers in a profile that would expose the same tools twice."""

import json
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from ..models import ServerDefinition


@dataclass
class ToolConflict:
    tool_key: str
    servers: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "tool_key": self.tool_key,
            "servers": [{"id": sid, "name": name} for sid, name in self.servers],
        }


def identity_key(definition: ServerDefinition) -> str:
    # Same command line means the same tool catalog.
    return f"{definition.command}:{json.dumps(definition.args)}"


def detect_tool_conflicts(servers: List[ServerDefinition]) -> List[ToolConflict]:
    """Group servers by command line and return groups with duplicates."""
    groups: Dict[str, ToolConflict] = {}
    for server in servers:
        key = identity_key(server)
        groups.setdefault(key, ToolConflict(tool_key=key)).servers.append(
            (server.id, server.name)
        )
    return [conflict for conflict in groups.values() if len(conflict.servers) > 1]
