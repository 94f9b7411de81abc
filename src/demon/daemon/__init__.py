"""Daemon process: liveness marker, supervisor and CLI-facing control."""

from demon.daemon.control import DaemonControl
from demon.daemon.pid import (
    PidRecord,
    acquire_pid_file,
    is_process_alive,
    read_pid_file,
    release_pid_file,
)
from demon.daemon.supervisor import Daemon, DaemonStatus, daemon_status

__all__ = [
    "Daemon",
    "DaemonControl",
    "DaemonStatus",
    "PidRecord",
    "acquire_pid_file",
    "daemon_status",
    "is_process_alive",
    "read_pid_file",
    "release_pid_file",
]
