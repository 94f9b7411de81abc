"""RPC method handlers for the control channel.

Every handler takes the params dict and returns JSON-serializable data.
Domain errors propagate and are mapped to error codes by the server.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from demon.executor.types import ExecutionResult
from demon.gateway.listener import GatewayStatus
from demon.jobs.types import JobSnapshot
from demon.scheduling import clock

if TYPE_CHECKING:
    from demon.daemon.supervisor import Daemon
    from demon.rpc.server import RPCServer

logger = logging.getLogger(__name__)


def snapshot_to_dict(
    snapshot: JobSnapshot,
    *,
    now: datetime | None = None,
    timezone: str = "UTC",
) -> dict[str, Any]:
    """Wire/display form of a job and its run state."""
    now = now or datetime.now(UTC)
    state = snapshot.state
    next_due = None
    if snapshot.job.enabled:
        next_due = clock.next_due(snapshot.job, state, now, timezone)
    return {
        "job": snapshot.job.model_dump(mode="json", exclude_none=True),
        "state": {**state.to_dict(), "running": state.running},
        "next_due": next_due.isoformat() if next_due else None,
    }


def result_to_dict(result: ExecutionResult) -> dict[str, Any]:
    return {
        "ref": result.ref,
        "status": result.status.value,
        "started_at": result.started_at.isoformat(),
        "ended_at": result.ended_at.isoformat(),
        "duration_secs": round(result.duration_secs, 2),
        "cost_usd": result.cost_usd,
        "turns_used": result.turns_used,
        "session_id": result.session_id,
        "output_text": result.output_text,
    }


def _require_id(params: dict[str, Any]) -> str:
    job_id = params.get("id")
    if not isinstance(job_id, str) or not job_id:
        raise ValueError("id is required")
    return job_id


def register_daemon_methods(server: RPCServer, daemon: Daemon) -> None:
    """Register daemon lifecycle methods."""

    async def daemon_status(params: dict[str, Any]) -> dict[str, Any]:
        return daemon.status()

    async def daemon_stop(params: dict[str, Any]) -> dict[str, Any]:
        # Let the response go out before shutdown begins
        asyncio.get_running_loop().call_soon(daemon.request_stop)
        return {"stopping": True}

    server.register("daemon.status", daemon_status)
    server.register("daemon.stop", daemon_stop)


def register_job_methods(server: RPCServer, daemon: Daemon) -> None:
    """Register job CRUD and execution methods."""
    store = daemon.store
    scheduler = daemon.scheduler

    def view(snapshot: JobSnapshot) -> dict[str, Any]:
        return snapshot_to_dict(snapshot, timezone=scheduler.timezone)

    async def job_add(params: dict[str, Any]) -> dict[str, Any]:
        """Params: job (table of job fields)."""
        data = params.get("job")
        if not isinstance(data, dict):
            raise ValueError("job must be an object")
        return view(store.add(data))

    async def job_list(params: dict[str, Any]) -> dict[str, Any]:
        return {"jobs": [view(s) for s in store.list()]}

    async def job_get(params: dict[str, Any]) -> dict[str, Any]:
        return view(store.get(_require_id(params)))

    async def job_remove(params: dict[str, Any]) -> dict[str, Any]:
        job_id = _require_id(params)
        store.remove(job_id)
        return {"id": job_id, "removed": True}

    async def job_run(params: dict[str, Any]) -> dict[str, Any]:
        """Params: id, wait (default true)."""
        job_id = _require_id(params)
        wait = bool(params.get("wait", True))
        result = await scheduler.run_now(job_id, wait=wait)
        if result is None:
            return {"id": job_id, "started": True}
        return result_to_dict(result)

    async def job_enable(params: dict[str, Any]) -> dict[str, Any]:
        return view(store.set_enabled(_require_id(params), True))

    async def job_disable(params: dict[str, Any]) -> dict[str, Any]:
        return view(store.set_enabled(_require_id(params), False))

    async def job_reload(params: dict[str, Any]) -> dict[str, Any]:
        store.reload()
        return {"jobs": len(store.list())}

    server.register("job.add", job_add)
    server.register("job.list", job_list)
    server.register("job.get", job_get)
    server.register("job.remove", job_remove)
    server.register("job.run", job_run)
    server.register("job.enable", job_enable)
    server.register("job.disable", job_disable)
    server.register("job.reload", job_reload)


def register_gateway_methods(server: RPCServer, daemon: Daemon) -> None:
    """Register gateway status."""

    async def gateway_status(params: dict[str, Any]) -> dict[str, Any]:
        if daemon.gateway is not None:
            return daemon.gateway.status().to_dict()
        return GatewayStatus.from_config(daemon.config.gateway).to_dict()

    server.register("gateway.status", gateway_status)


def register_all_methods(server: RPCServer, daemon: Daemon) -> None:
    register_daemon_methods(server, daemon)
    register_job_methods(server, daemon)
    register_gateway_methods(server, daemon)
