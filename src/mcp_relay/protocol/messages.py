"""JSON-RPC 2.0 message construction and line classification."""

import json
from typing import Any, Dict, Optional

JSONRPC_VERSION = "2.0"
JSONRPC_MARKER = "jsonrpc"

INITIALIZE = "initialize"
INITIALIZED = "notifications/initialized"
TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"


def request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
        "params": params if params is not None else {},
    }


def notification(method: str) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "method": method}


def initialize_params(protocol_version: str, client_name: str, client_version: str) -> Dict[str, Any]:
    return {
        "protocolVersion": protocol_version,
        "capabilities": {},
        "clientInfo": {"name": client_name, "version": client_version},
    }


def encode(message: Dict[str, Any]) -> str:
    """Serialize to a single line without the trailing newline."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


def is_response(line: str) -> Optional[Dict[str, Any]]:
    """Return the decoded message if ``line`` is a JSON-RPC object, else None.

    Anything else (log output, banners, JSON without the marker) is noise.
    """
    try:
        value = json.loads(line)
    except ValueError:
        return None
    if isinstance(value, dict) and JSONRPC_MARKER in value:
        return value
    return None
