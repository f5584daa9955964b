"""Process supervision, ephemeral inspection and profile management."""

from .conflicts import ToolConflict, detect_tool_conflicts
from .diagnostics import (
    ConnectionTestResult,
    DependencyIssue,
    check_dependencies,
    test_connection,
)
from .export import build_client_config
from .inspector import ToolInspector
from .profiles import ProfileReconciler
from .server_manager import RelayManager
from .server_registry import ReconcileResult, RunningProcess, ServerRegistry

__all__ = [
    "ConnectionTestResult",
    "DependencyIssue",
    "ProfileReconciler",
    "ReconcileResult",
    "RelayManager",
    "RunningProcess",
    "ServerRegistry",
    "ToolConflict",
    "ToolInspector",
    "build_client_config",
    "check_dependencies",
    "detect_tool_conflicts",
    "test_connection",
]
