"""Launching and terminating server processes."""

import asyncio
import os
import sys
from typing import Dict, List, Mapping, Optional, Sequence

import psutil
import structlog

from ..exceptions import SpawnError

logger = structlog.get_logger(__name__)

PIPE = asyncio.subprocess.PIPE


def build_argv(command: str, args: Sequence[str]) -> List[str]:
    """Command line for the platform; Windows resolves .cmd shims via cmd /C."""
    if sys.platform == "win32":
        return ["cmd", "/C", command, *args]
    return [command, *args]


def build_environment(env: Mapping[str, str]) -> Dict[str, str]:
    """Parent environment with the server's variables layered on top."""
    spawn_env = os.environ.copy()
    spawn_env.update(env)
    return spawn_env


async def launch(
    server_id: str,
    command: str,
    args: Sequence[str],
    env: Mapping[str, str],
    limit: int = 16 * 1024 * 1024,
) -> asyncio.subprocess.Process:
    """Start a server with all three standard streams piped.

    Raises:
        SpawnError: the executable could not be launched
    """
    argv = build_argv(command, args)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=PIPE,
            stdout=PIPE,
            stderr=PIPE,
            env=build_environment(env),
            limit=limit,
            # Own process group so terminal signals do not reach servers directly
            start_new_session=os.name == "posix",
        )
    except OSError as e:
        raise SpawnError(
            server_id,
            f"Failed to spawn server: {e}",
            suggestion="Verify the command exists on PATH and is executable",
            details={"command": command, "args": list(args)},
        ) from e

    logger.debug("Process launched", server_id=server_id, pid=process.pid, argv=argv)
    return process


def _children(pid: int) -> List[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def _signal_all(procs: Sequence[psutil.Process], kill: bool) -> None:
    for proc in procs:
        try:
            if kill:
                proc.kill()
            else:
                proc.terminate()
        except psutil.Error:
            pass


async def terminate(
    process: asyncio.subprocess.Process,
    timeout: float = 5.0,
    kill_tree: bool = True,
) -> Optional[int]:
    """Stop a process (and its descendants), escalating to SIGKILL.

    Safe to call on a process that already exited. Returns the exit code.
    """
    if process.stdin is not None and not process.stdin.is_closing():
        process.stdin.close()

    if process.returncode is not None:
        return process.returncode

    children = _children(process.pid) if kill_tree else []

    try:
        process.terminate()
    except ProcessLookupError:
        pass
    _signal_all(children, kill=False)

    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Process ignored SIGTERM, killing", pid=process.pid)
        _signal_all(children, kill=True)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    if children:
        _, alive = await asyncio.to_thread(psutil.wait_procs, children, 1.0)
        _signal_all(alive, kill=True)

    return process.returncode


def is_alive(pid: Optional[int]) -> bool:
    """Whether a pid refers to a live, non-zombie process."""
    if pid is None:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False
