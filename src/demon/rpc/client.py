"""Synchronous RPC client used by the CLI."""

import itertools
import json
import socket
from pathlib import Path
from typing import Any

from demon.rpc.protocol import RPCRequest, RPCResponse, read_message_sync

_ids = itertools.count(1)


def rpc_call(
    socket_path: Path,
    method: str,
    params: dict[str, Any] | None = None,
    *,
    timeout: float | None = 30.0,
) -> Any:
    """Make an RPC call to the running daemon.

    Args:
        socket_path: The daemon's control socket.
        method: RPC method name (e.g., "job.list").
        params: Method parameters.
        timeout: Socket timeout in seconds; None waits forever.

    Returns:
        The result from the RPC call.

    Raises:
        ControlError: If the daemon returned an error (``code`` is set).
        ConnectionError: If unable to reach the daemon.
    """
    if not socket_path.exists():
        raise ConnectionError(f"RPC socket not found: {socket_path}")

    request = RPCRequest(method=method, params=params or {}, id=next(_ids))

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        try:
            sock.connect(str(socket_path))
        except (FileNotFoundError, ConnectionRefusedError) as e:
            raise ConnectionError(f"Cannot connect to {socket_path}: {e}") from e
        sock.sendall(request.to_bytes())

        data = read_message_sync(sock)
        if data is None:
            raise ConnectionError("Connection closed by server")
    except TimeoutError as e:
        raise ConnectionError(f"Timed out waiting for daemon ({method})") from e
    finally:
        sock.close()

    return RPCResponse.from_dict(json.loads(data)).unwrap()
