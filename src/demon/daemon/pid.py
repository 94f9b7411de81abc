"""The daemon's liveness marker, ``run/demon.pid``.

Two lines: the pid and the wall-clock time the daemon acquired the marker.
The marker is written to a temp file and hard-linked into place, so two
daemons racing to start cannot both win and neither sees it half written.
A marker whose pid is gone, is a zombie, or now belongs to a process
started after the marker was written is stale and gets replaced.
"""

import logging
import os
import signal
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import psutil

from demon.errors import DaemonAlreadyRunning

logger = logging.getLogger(__name__)

# Slack between the process creation time and the marker's timestamp
_START_SLACK_SECS = 1.0

# Unparseable markers younger than this count as held
_UNPARSEABLE_GRACE_SECS = 5.0


@dataclass
class PidRecord:
    pid: int
    start_time: float
    alive: bool

    @staticmethod
    def render(pid: int, start_time: float) -> str:
        return f"{pid}\n{start_time}\n"

    @classmethod
    def parse(cls, text: str) -> "PidRecord | None":
        fields = text.split()
        try:
            pid = int(fields[0])
            start_time = float(fields[1]) if len(fields) > 1 else 0.0
        except (IndexError, ValueError):
            return None
        return cls(pid, start_time, alive=_holds_marker(pid, start_time))


def is_process_alive(pid: int) -> bool:
    """True for a running, non-zombie process."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def _holds_marker(pid: int, start_time: float) -> bool:
    if not is_process_alive(pid):
        return False
    if start_time <= 0:
        return True
    try:
        return psutil.Process(pid).create_time() <= start_time + _START_SLACK_SECS
    except psutil.Error:
        return True


def read_pid_file(pid_path: Path) -> PidRecord | None:
    """Parse the marker; None if it is missing or unreadable."""
    try:
        return PidRecord.parse(pid_path.read_text())
    except FileNotFoundError:
        return None


def _marker_age(pid_path: Path) -> float | None:
    try:
        return time.time() - pid_path.stat().st_mtime
    except FileNotFoundError:
        return None


def _publish(pid_path: Path, content: str) -> bool:
    """Link a fully written temp file into place; False if the marker exists."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{pid_path.name}.", dir=pid_path.parent)
    try:
        with open(fd, "w") as f:
            f.write(content)
        os.link(tmp_name, pid_path)
    except FileExistsError:
        return False
    finally:
        os.unlink(tmp_name)
    return True


def acquire_pid_file(pid_path: Path, pid: int | None = None) -> PidRecord:
    """Take the marker for ``pid`` (default: this process).

    The marker only ever appears with its contents in place. One that cannot
    be parsed is treated as held until it is ``_UNPARSEABLE_GRACE_SECS`` old.

    Raises:
        DaemonAlreadyRunning: If a live daemon already holds it.
    """
    pid = pid or os.getpid()
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    for _attempt in range(3):
        started = time.time()
        if _publish(pid_path, PidRecord.render(pid, started)):
            return PidRecord(pid, started, alive=True)

        holder = read_pid_file(pid_path)
        if holder is not None and holder.alive:
            raise DaemonAlreadyRunning(holder.pid)
        if holder is None:
            age = _marker_age(pid_path)
            if age is not None and age < _UNPARSEABLE_GRACE_SECS:
                raise DaemonAlreadyRunning(-1)
        logger.warning(
            "stale_pid_file_removed",
            extra={"process.pid": holder.pid if holder else None},
        )
        pid_path.unlink(missing_ok=True)

    holder = read_pid_file(pid_path)
    raise DaemonAlreadyRunning(holder.pid if holder else -1)


def release_pid_file(pid_path: Path, pid: int | None = None) -> None:
    """Delete the marker, unless another process has taken it over."""
    holder = read_pid_file(pid_path)
    if holder is not None and holder.pid != (pid or os.getpid()):
        logger.warning("pid_file_owned_by_other", extra={"process.pid": holder.pid})
        return
    pid_path.unlink(missing_ok=True)


def terminate(pid: int) -> bool:
    """Ask ``pid`` to shut down gracefully; False if it is already gone."""
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        return False
    return True


def memory_mb(pid: int) -> float | None:
    try:
        return psutil.Process(pid).memory_info().rss / (1024 * 1024)
    except psutil.Error:
        return None
