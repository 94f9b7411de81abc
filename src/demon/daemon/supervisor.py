"""Daemon supervisor: wires the components together and owns the lifecycle.

Startup order: liveness marker, job store, control socket, scheduler, gateway.
Shutdown runs in reverse and removes the marker last, so a visible marker
always means a daemon that may still be touching state.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from demon.config.models import DemonConfig
from demon.config.paths import DemonPaths
from demon.daemon.pid import (
    acquire_pid_file,
    memory_mb,
    read_pid_file,
    release_pid_file,
)
from demon.errors import GatewayUnavailable, PersistenceError
from demon.executor.claude import ClaudeExecutor
from demon.gateway.listener import GatewayListener
from demon.jobs.store import JobStore
from demon.output.router import OutputRouter
from demon.output.telegram import TelegramSender
from demon.rpc.methods import register_all_methods
from demon.rpc.server import RPCServer
from demon.scheduling.loop import SchedulerLoop

logger = logging.getLogger(__name__)


@dataclass
class DaemonStatus:
    """What the liveness marker says about the daemon."""

    running: bool
    pid: int | None = None
    # A marker exists but its process is gone
    stale: bool = False
    started_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "pid": self.pid,
            "stale": self.stale,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


def daemon_status(paths: DemonPaths) -> DaemonStatus:
    info = read_pid_file(paths.pid_file)
    if info is None:
        return DaemonStatus(running=False)
    started_at = (
        datetime.fromtimestamp(info.start_time, UTC) if info.start_time else None
    )
    return DaemonStatus(
        running=info.alive,
        pid=info.pid,
        stale=not info.alive,
        started_at=started_at,
    )


class Daemon:
    """The long-running process: scheduler, gateway and control socket."""

    def __init__(
        self,
        config: DemonConfig,
        *,
        with_gateway: bool = False,
        executor: ClaudeExecutor | None = None,
        sender: TelegramSender | None = None,
    ) -> None:
        self.config = config
        self.paths = config.resolved_paths
        self.with_gateway = with_gateway
        self.started_at = datetime.now(UTC)

        self.store = JobStore(self.paths)
        self.executor = executor or ClaudeExecutor(config.executor)
        self.sender = sender or TelegramSender(config.gateway)
        self.router = OutputRouter(self.paths.output_dir, self.sender)
        self.scheduler = SchedulerLoop(
            self.store,
            self.executor,
            self.router,
            config.defaults,
            tick_secs=config.scheduler.tick_secs,
            timezone=config.scheduler.timezone,
            started_at=self.started_at,
        )
        self.gateway: GatewayListener | None = None
        if with_gateway:
            self.gateway = GatewayListener(
                config.gateway, self.executor, self.router, self.sender
            )
        self.rpc = RPCServer(self.paths.socket_path)
        self._shutdown = asyncio.Event()

    def request_stop(self) -> None:
        """Ask run() to shut down gracefully."""
        if not self._shutdown.is_set():
            logger.info("daemon_stop_requested")
        self._shutdown.set()

    def reload(self) -> bool:
        """Re-read jobs.toml; a malformed file keeps the current jobs."""
        try:
            self.store.reload()
            return True
        except PersistenceError as e:
            logger.error("jobs_reload_failed", extra={"error.message": str(e)})
            return False

    def status(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "running": True,
            "pid": os.getpid(),
            "started_at": self.started_at.isoformat(),
            "jobs": len(self.store.list()),
            "in_flight": self.scheduler.in_flight,
            "timezone": self.scheduler.timezone,
            "gateway": self.gateway.status().to_dict() if self.gateway else None,
        }
        if (rss := memory_mb(os.getpid())) is not None:
            data["memory_mb"] = round(rss, 1)
        return data

    async def run(self, *, install_signals: bool = True) -> None:
        """Run until SIGTERM/SIGINT or a ``daemon.stop`` request.

        Raises:
            DaemonAlreadyRunning: If another daemon holds the marker.
            PersistenceError: If jobs.toml or state.json is malformed.
        """
        self.paths.ensure()
        acquire_pid_file(self.paths.pid_file)
        logger.info(
            "daemon_starting",
            extra={"process.pid": os.getpid(), "file.path": str(self.paths.base_dir)},
        )

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        try:
            self.store.load()

            register_all_methods(self.rpc, self)
            await self.rpc.start()
            await self.scheduler.start()
            if self.gateway is not None:
                try:
                    await self.gateway.start()
                except GatewayUnavailable as e:
                    logger.error("gateway_unavailable", extra={"error.message": str(e)})

            if install_signals:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(sig, self.request_stop)
                    installed.append(sig)
                loop.add_signal_handler(signal.SIGHUP, self.reload)
                installed.append(signal.SIGHUP)

            logger.info("daemon_started", extra={"jobs": len(self.store.list())})
            await self._shutdown.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self._cleanup()
            release_pid_file(self.paths.pid_file)
            logger.info("daemon_stopped")

    async def _cleanup(self) -> None:
        """Stop intake, drain executions, then close resources."""
        grace = self.config.scheduler.shutdown_grace_secs
        await self.scheduler.stop()
        if self.gateway is not None:
            await self.gateway.stop()

        drains = [self.scheduler.drain(grace)]
        if self.gateway is not None:
            drains.append(self.gateway.drain(grace))
        results = await asyncio.gather(*drains, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.warning("drain_failed", extra={"error.message": str(result)})

        for resource, method in [(self.rpc, "stop"), (self.sender, "close")]:
            try:
                await getattr(resource, method)()
            except Exception as e:
                logger.warning(f"Error during {method}: {e}")
