"""Pid file of the running supervisor and the reload signal sent to it."""

import os
import signal
from pathlib import Path
from typing import Optional, Union

import structlog

from .process import is_alive

logger = structlog.get_logger(__name__)

RELOAD_SIGNAL = getattr(signal, "SIGHUP", None)


def read_pid(path: Union[str, Path]) -> Optional[int]:
    path = Path(path)
    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def write_pid(path: Union[str, Path], pid: Optional[int] = None) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid or os.getpid()}\n", encoding="utf-8")


def remove_pid(path: Union[str, Path], pid: Optional[int] = None) -> None:
    """Remove the pid file if it still names ``pid`` (default: this process)."""
    path = Path(path)
    if read_pid(path) == (pid or os.getpid()):
        path.unlink(missing_ok=True)


def signal_supervisor(path: Union[str, Path]) -> bool:
    """Ask a running supervisor to re-read the definition store.

    Returns True when a live supervisor was signalled. Platforms without
    SIGHUP rely on the supervisor's periodic refresh instead.
    """
    if RELOAD_SIGNAL is None:
        return False

    pid = read_pid(path)
    if pid is None or not is_alive(pid):
        return False

    try:
        os.kill(pid, RELOAD_SIGNAL)
    except OSError as e:
        logger.warning("Could not signal supervisor", pid=pid, error=str(e))
        return False

    logger.debug("Signalled supervisor to reload", pid=pid)
    return True
