"""Centralized path management for demon.

All state (config, jobs, outputs, logs, runtime files) lives under a single
base directory. The base directory can be overridden with the DEMON_HOME
environment variable, and everything except config.toml can be moved again
with ``[paths] base_dir`` in the config file.

Default layout (~/.demon):
- config.toml        daemon configuration
- jobs.toml          job definitions
- state.json         per-job run state (last run, consumed one-shots)
- output/<job_id>/   one file per execution
- logs/              JSONL logs and daemon stdout/stderr
- run/demon.pid      liveness marker
- run/demon.sock     control socket
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_VAR = "DEMON_HOME"


def get_system_timezone() -> str:
    """Detect system timezone, falling back to UTC.

    Resolution order:
    1. TZ environment variable (if set)
    2. /etc/timezone file (Debian/Ubuntu)
    3. /etc/localtime symlink target (most Linux distros)
    4. Fallback to UTC

    Returns:
        IANA timezone name (e.g., "America/Los_Angeles", "Europe/London", "UTC").
    """
    if tz := os.environ.get("TZ"):
        return tz

    try:
        tz = Path("/etc/timezone").read_text().strip()
        if tz:
            return tz
    except (FileNotFoundError, PermissionError):
        pass

    try:
        link = Path("/etc/localtime").resolve()
        parts = str(link).split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except (FileNotFoundError, PermissionError):
        pass

    return "UTC"


@lru_cache(maxsize=1)
def get_demon_home() -> Path:
    """Get the base directory for all demon data.

    Resolution order:
    1. DEMON_HOME environment variable (if set)
    2. Platform default (~/.demon)
    """
    if env_home := os.environ.get(ENV_VAR):
        return Path(env_home).expanduser().resolve()
    return Path.home() / ".demon"


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_demon_home() / "config.toml"


@dataclass(frozen=True)
class DemonPaths:
    """Resolved file layout rooted at a base directory."""

    base_dir: Path

    @classmethod
    def default(cls) -> "DemonPaths":
        return cls(get_demon_home())

    @property
    def config_file(self) -> Path:
        return self.base_dir / "config.toml"

    @property
    def jobs_file(self) -> Path:
        return self.base_dir / "jobs.toml"

    @property
    def state_file(self) -> Path:
        return self.base_dir / "state.json"

    @property
    def lock_file(self) -> Path:
        return self.base_dir / ".jobs.lock"

    @property
    def output_dir(self) -> Path:
        return self.base_dir / "output"

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def daemon_log(self) -> Path:
        """Stdout/stderr of a background daemon."""
        return self.logs_dir / "daemon.out"

    @property
    def run_dir(self) -> Path:
        return self.base_dir / "run"

    @property
    def pid_file(self) -> Path:
        return self.run_dir / "demon.pid"

    @property
    def socket_path(self) -> Path:
        return self.run_dir / "demon.sock"

    def job_output_dir(self, job_id: str) -> Path:
        return self.output_dir / job_id

    def ensure(self) -> None:
        """Create the directory skeleton."""
        for path in (self.base_dir, self.output_dir, self.logs_dir, self.run_dir):
            path.mkdir(parents=True, exist_ok=True)
