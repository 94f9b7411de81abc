"""Control operations behind the CLI.

When a daemon is live, requests go over its control socket so the daemon's
store stays the single owner of job state. Otherwise the files are edited
directly under the store's file lock.
"""

import asyncio
import logging
import shutil
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

from demon.config.models import DemonConfig
from demon.daemon.pid import is_process_alive, terminate
from demon.daemon.supervisor import Daemon, DaemonStatus, daemon_status
from demon.errors import GatewayUnavailable
from demon.executor.claude import ClaudeExecutor
from demon.gateway.listener import GatewayListener, GatewayStatus
from demon.jobs.store import JobStore
from demon.output.router import OutputRouter
from demon.output.telegram import TelegramSender
from demon.rpc.client import rpc_call
from demon.rpc.methods import result_to_dict, snapshot_to_dict
from demon.scheduling.loop import SchedulerLoop

logger = logging.getLogger(__name__)

STARTUP_WAIT_SECS = 5.0


def _get_demon_command() -> list[str]:
    """Get the command that runs the demon CLI."""
    demon_path = shutil.which("demon")
    if demon_path:
        return [demon_path]
    # Fall back to running as module
    return [sys.executable, "-m", "demon"]


class DaemonControl:
    """Routes control commands to the running daemon or to the files on disk.

    Example:
        control = DaemonControl(load_config())
        ok, message = control.start()
        jobs = control.list_jobs()
    """

    def __init__(self, config: DemonConfig, config_path: Path | None = None) -> None:
        self.config = config
        self.config_path = config_path
        self.paths = config.resolved_paths

    # ------------------------------------------------------------------
    # Daemon lifecycle
    # ------------------------------------------------------------------

    def daemon_status(self) -> DaemonStatus:
        return daemon_status(self.paths)

    def is_live(self) -> bool:
        return self.daemon_status().running and self.paths.socket_path.exists()

    def start(self, *, with_gateway: bool = False, foreground: bool = False) -> tuple[bool, str]:
        """Start the daemon.

        Returns:
            Tuple of (success, message).
        """
        status = self.daemon_status()
        if status.running:
            return False, f"Demon already running (PID {status.pid})"

        if foreground:
            daemon = Daemon(self.config, with_gateway=with_gateway)
            asyncio.run(daemon.run())
            return True, "Demon stopped"

        self.paths.ensure()
        cmd = _get_demon_command()
        if self.config_path is not None:
            cmd.extend(["--config", str(self.config_path)])
        cmd.extend(["start", "--foreground"])
        if with_gateway:
            cmd.append("--gateway")

        with self.paths.daemon_log.open("a") as log_file:
            proc = subprocess.Popen(  # noqa: S603
                cmd,
                stdout=log_file,
                stderr=log_file,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )

        deadline = time.monotonic() + STARTUP_WAIT_SECS
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                return False, (
                    f"Demon exited during startup (code {proc.returncode}); "
                    f"see {self.paths.daemon_log}"
                )
            if self.is_live():
                return True, f"Demon started (PID {proc.pid})"
            time.sleep(0.1)
        return True, f"Demon starting (PID {proc.pid}); see {self.paths.daemon_log}"

    def stop(self, timeout: float | None = None) -> tuple[bool, str]:
        """Stop the daemon with SIGTERM and wait for the marker to disappear.

        Returns:
            Tuple of (success, message).
        """
        status = self.daemon_status()
        if not status.running:
            if status.stale:
                self.paths.pid_file.unlink(missing_ok=True)
                return True, "Demon not running (removed stale PID file)"
            return True, "Demon not running"

        assert status.pid is not None
        if timeout is None:
            timeout = (
                self.config.scheduler.shutdown_grace_secs
                + self.config.executor.kill_grace_secs
                + 15
            )

        terminate(status.pid)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.paths.pid_file.exists() or not is_process_alive(status.pid):
                return True, f"Demon stopped (PID {status.pid})"
            time.sleep(0.1)
        return False, f"Demon did not stop within {timeout:.0f}s (PID {status.pid})"

    def status(self) -> dict[str, Any]:
        """Daemon state plus every job's last outcome."""
        status = self.daemon_status()
        data: dict[str, Any] = {"daemon": status.to_dict()}
        if status.running and self.paths.socket_path.exists():
            try:
                data["details"] = rpc_call(self.paths.socket_path, "daemon.status")
            except ConnectionError as e:
                logger.debug(f"daemon.status failed: {e}")
        data["jobs"] = self.list_jobs()
        return data

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _call(self, method: str, params: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        return rpc_call(self.paths.socket_path, method, params, **kwargs)

    def _local_store(self) -> JobStore:
        store = JobStore(self.paths)
        store.load()
        return store

    def _view(self, snapshot: Any) -> dict[str, Any]:
        return snapshot_to_dict(snapshot, timezone=self.config.scheduler.timezone)

    def add_job(self, data: dict[str, Any]) -> dict[str, Any]:
        if self.is_live():
            return self._call("job.add", {"job": data})
        return self._view(self._local_store().add(data))

    def list_jobs(self) -> list[dict[str, Any]]:
        if self.is_live():
            return self._call("job.list")["jobs"]
        return [self._view(s) for s in self._local_store().list()]

    def get_job(self, job_id: str) -> dict[str, Any]:
        if self.is_live():
            return self._call("job.get", {"id": job_id})
        return self._view(self._local_store().get(job_id))

    def remove_job(self, job_id: str) -> None:
        if self.is_live():
            self._call("job.remove", {"id": job_id})
            return
        self._local_store().remove(job_id)

    def set_enabled(self, job_id: str, enabled: bool) -> dict[str, Any]:
        if self.is_live():
            method = "job.enable" if enabled else "job.disable"
            return self._call(method, {"id": job_id})
        return self._view(self._local_store().set_enabled(job_id, enabled))

    def reload_jobs(self) -> int | None:
        """Ask the daemon to re-read jobs.toml; None when no daemon is running."""
        if not self.is_live():
            return None
        return self._call("job.reload")["jobs"]

    def run_job(self, job_id: str) -> dict[str, Any]:
        """Run a job now: inside the daemon if live, in this process otherwise."""
        if self.is_live():
            return self._call("job.run", {"id": job_id}, timeout=None)
        return asyncio.run(self._run_local(job_id))

    async def _run_local(self, job_id: str) -> dict[str, Any]:
        store = self._local_store()
        sender = TelegramSender(self.config.gateway)
        loop = SchedulerLoop(
            store,
            ClaudeExecutor(self.config.executor),
            OutputRouter(self.paths.output_dir, sender),
            self.config.defaults,
            timezone=self.config.scheduler.timezone,
        )
        try:
            result = await loop.run_now(job_id)
        finally:
            await sender.close()
        assert result is not None
        return result_to_dict(result)

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    def gateway_status(self) -> dict[str, Any]:
        if self.is_live():
            return self._call("gateway.status")
        return GatewayStatus.from_config(self.config.gateway).to_dict()

    def run_gateway(self) -> None:
        """Run the gateway alone in the foreground until interrupted.

        Raises:
            GatewayUnavailable: If the live daemon is already polling.
        """
        if self.is_live() and self._call("gateway.status").get("polling"):
            raise GatewayUnavailable("The running daemon is already polling Telegram")
        asyncio.run(self._gateway_main())

    async def _gateway_main(self) -> None:
        sender = TelegramSender(self.config.gateway)
        listener = GatewayListener(
            self.config.gateway,
            ClaudeExecutor(self.config.executor),
            OutputRouter(self.paths.output_dir, sender),
            sender,
        )
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop.set)
        try:
            await listener.start()
            await stop.wait()
        finally:
            await listener.stop()
            await listener.drain(self.config.scheduler.shutdown_grace_secs)
            await sender.close()
