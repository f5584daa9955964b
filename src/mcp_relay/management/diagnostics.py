"""Pre-flight checks for server commands: prerequisites and a test handshake."""

import asyncio
import platform
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from .. import __version__
from ..config.settings import RelaySettings
from ..exceptions import ProtocolError, RelayError
from ..protocol import HandshakeSession, ProtocolClient
from ..vault import SecretInjector
from .process import launch, terminate

logger = structlog.get_logger(__name__)

NODE_BINARIES = {"node", "npm", "npx", "pnpm", "yarn", "bun"}
PYTHON_BINARIES = {"python", "python3", "pip", "pip3", "uv", "pipx"}

STDERR_PREVIEW_LINES = 8
CONNECTION_TEST_ATTEMPTS = 40
CONNECTION_TEST_TIMEOUT = 12.0


@dataclass
class DependencyIssue:
    binary: str
    required_by: str
    install_hint: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectionTestResult:
    """Outcome of a one-shot initialize handshake against a command."""

    success: bool
    message: str
    exit_code: Optional[int] = None
    missing_dependencies: List[DependencyIssue] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)
    stderr_preview: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def extract_binary(command: str) -> str:
    parts = command.strip().split()
    return parts[0].strip("\"'") if parts else ""


def is_probably_path(binary: str) -> bool:
    return "/" in binary or "\\" in binary or binary.endswith((".exe", ".cmd"))


def _platform_name() -> str:
    system = platform.system()
    return {"Windows": "Windows", "Darwin": "macOS"}.get(system, "Linux")


def install_hint_for(binary: str) -> str:
    name = _platform_name()
    if binary in NODE_BINARIES:
        return f"{name}: install Node.js LTS and ensure `node`/`npm` are on PATH."
    if binary in PYTHON_BINARIES:
        return (
            f"{name}: install Python 3 and ensure `python` is on PATH. "
            "For `uv`, see docs.astral.sh/uv."
        )
    if binary == "docker":
        return f"{name}: install Docker Desktop (or Docker Engine) and ensure `docker` is on PATH."
    return f"{name}: install `{binary}` and make sure it is available on PATH."


def command_exists(binary: str) -> bool:
    if not binary:
        return False
    if is_probably_path(binary):
        return Path(binary).exists()
    if binary == "python":
        # Many systems only ship python3
        return shutil.which("python") is not None or shutil.which("python3") is not None
    return shutil.which(binary) is not None


def check_dependencies(command: str, args: Sequence[str] = ()) -> List[DependencyIssue]:
    """List binaries the command needs that are not installed."""
    base = extract_binary(command)
    required = set()
    if base:
        required.add(base)
    if base in NODE_BINARIES:
        required.add("node")
    if base in PYTHON_BINARIES or any(arg.endswith(".py") for arg in args):
        required.add("python")
    if base == "docker" or any("docker" in arg.lower() for arg in args):
        required.add("docker")

    missing = [
        DependencyIssue(
            binary=binary,
            required_by="server command" if binary == base else "command/runtime requirements",
            install_hint=install_hint_for(binary),
        )
        for binary in required
        if not command_exists(binary)
    ]
    return sorted(missing, key=lambda issue: issue.binary)


def derive_hints(message: str, stderr_preview: Sequence[str]) -> List[str]:
    lower = message.lower()
    stderr_blob = " ".join(stderr_preview).lower()
    hints = []

    if "enoent" in lower or "not recognized" in lower or "no such file" in lower or "not found" in stderr_blob:
        hints.append("Verify the command exists on PATH and is spelled correctly.")
    if "permission denied" in lower or "permission denied" in stderr_blob:
        hints.append("Check executable permissions and run the command manually once in your shell.")
    if "module not found" in stderr_blob or "cannot find module" in stderr_blob:
        hints.append("Install missing Node dependencies (`npm install` / `pnpm install`) in the server project.")
    if "no module named" in stderr_blob:
        hints.append("Install required Python packages in the active environment.")
    if not hints:
        hints.append("Open server logs after enabling for additional runtime details.")
    return hints


async def test_connection(
    command: str,
    args: Sequence[str] = (),
    env: Optional[Mapping[str, str]] = None,
    secrets: Sequence[str] = (),
    server_id: Optional[str] = None,
    injector: Optional[SecretInjector] = None,
    settings: Optional[RelaySettings] = None,
) -> ConnectionTestResult:
    """Spawn the command, send ``initialize`` and report what happened.

    Never raises for server-side problems; they are described in the
    result together with hints and the first lines of stderr.
    """
    settings = settings or RelaySettings()

    if not command.strip():
        return ConnectionTestResult(
            success=False,
            message="Command is required",
            hints=["Provide a server command (for example `npx` or `python`)."],
        )

    spawn_env: Dict[str, str] = dict(env or {})
    if server_id and injector is not None and secrets:
        try:
            spawn_env = await asyncio.to_thread(
                injector.resolve, server_id, secrets, spawn_env, True
            )
        except RelayError as e:
            hints = [e.suggestion] if e.suggestion else []
            return ConnectionTestResult(success=False, message=e.message, hints=hints)

    missing = await asyncio.to_thread(check_dependencies, command, args)
    if missing:
        return ConnectionTestResult(
            success=False,
            message="Missing prerequisites detected",
            missing_dependencies=missing,
            hints=[issue.install_hint for issue in missing],
        )

    try:
        process = await launch(
            server_id or "diagnostics",
            command,
            list(args),
            spawn_env,
            limit=settings.protocol.stream_limit,
        )
    except RelayError as e:
        message = f"Failed to spawn server process: {e.message}"
        return ConnectionTestResult(success=False, message=message, hints=derive_hints(message, []))

    stderr_lines: List[str] = []
    stderr_task = asyncio.create_task(_preview_stderr(process.stderr, stderr_lines))

    session = HandshakeSession(
        ProtocolClient(
            process.stdout,
            process.stdin,
            attempt_budget=CONNECTION_TEST_ATTEMPTS,
            line_wait=settings.protocol.line_wait,
        ),
        protocol_version=settings.protocol.protocol_version,
        client_name=f"{settings.protocol.client_name}-diagnostics",
        client_version=__version__,
    )

    error: Optional[RelayError] = None
    try:
        await session.initialize(CONNECTION_TEST_TIMEOUT)
    except RelayError as e:
        error = e
    finally:
        session.close()
        exit_code = await terminate(process, timeout=settings.process.stop_timeout)
        # The pipe hits EOF once the process is gone; keep its last lines.
        done, _ = await asyncio.wait([stderr_task], timeout=0.5)
        if not done:
            stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)

    preview = list(stderr_lines)
    if error is None:
        return ConnectionTestResult(
            success=True,
            message="Server responded to MCP initialize successfully.",
            exit_code=exit_code,
            hints=["Connection test passed. You can safely save or enable this server."],
            stderr_preview=preview,
        )

    if isinstance(error, ProtocolError):
        message = f"Server returned MCP initialize error: {error.error_message}"
    else:
        message = error.message
    logger.info("Connection test failed", command=command, error=message)
    return ConnectionTestResult(
        success=False,
        message=message,
        exit_code=exit_code,
        hints=derive_hints(message, preview),
        stderr_preview=preview,
    )


async def _preview_stderr(reader: Optional[asyncio.StreamReader], lines: List[str]) -> None:
    """Drain stderr until EOF, keeping only the first preview lines."""
    if reader is None:
        return
    while True:
        try:
            raw = await reader.readline()
        except ValueError:
            continue
        except OSError:
            return
        if not raw:
            return
        if len(lines) < STDERR_PREVIEW_LINES:
            lines.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))


# Not a pytest test despite the name.
test_connection.__test__ = False  # type: ignore[attr-defined]
