"""Control socket server for the running daemon.

Each client connection carries a sequence of length-prefixed JSON-RPC 2.0
requests. Handlers are plain coroutines taking the ``params`` object;
``DemonError`` subclasses raised by a handler are mapped onto the
application error codes in ``ErrorCode``.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from demon.errors import (
    AlreadyRunning,
    DemonError,
    DuplicateId,
    GatewayUnavailable,
    JobNotFound,
    PersistenceError,
    ValidationError,
)
from demon.rpc.protocol import ErrorCode, RPCRequest, RPCResponse, read_message

logger = logging.getLogger(__name__)

RPCHandler = Callable[[dict[str, Any]], Awaitable[Any]]

# Subclasses before their bases
_ERROR_CODES: list[tuple[type[DemonError], int]] = [
    (DuplicateId, ErrorCode.DUPLICATE_ID),
    (ValidationError, ErrorCode.VALIDATION_ERROR),
    (JobNotFound, ErrorCode.JOB_NOT_FOUND),
    (AlreadyRunning, ErrorCode.ALREADY_RUNNING),
    (PersistenceError, ErrorCode.PERSISTENCE_ERROR),
    (GatewayUnavailable, ErrorCode.GATEWAY_UNAVAILABLE),
]


def error_code_for(error: DemonError) -> int:
    return next(
        (code for error_type, code in _ERROR_CODES if isinstance(error, error_type)),
        ErrorCode.INTERNAL_ERROR,
    )


def parse_request(data: bytes) -> RPCRequest | RPCResponse:
    """Decode one frame, returning an error response if it is not a request."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        return RPCResponse.error_response(None, ErrorCode.PARSE_ERROR, f"Parse error: {e}")
    if not isinstance(payload, dict):
        return RPCResponse.error_response(
            None, ErrorCode.INVALID_REQUEST, "Request must be an object"
        )

    request = RPCRequest.from_dict(payload)
    if request.jsonrpc != "2.0":
        problem = "Invalid JSON-RPC version"
    elif not request.method:
        problem = "Missing method"
    elif not isinstance(request.params, dict):
        problem = "params must be an object"
    else:
        return request
    return RPCResponse.error_response(request.id, ErrorCode.INVALID_REQUEST, problem)


class RPCServer:
    """JSON-RPC server bound to a private unix socket."""

    def __init__(self, socket_path: Path):
        self._socket_path = socket_path
        self._server: asyncio.Server | None = None
        self._methods: dict[str, RPCHandler] = {}
        self._clients: set[asyncio.StreamWriter] = set()

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    def register(self, method: str, handler: RPCHandler) -> None:
        self._methods[method] = handler

    async def start(self) -> None:
        self._socket_path.parent.mkdir(parents=True, exist_ok=True)
        # A leftover socket from a crashed daemon would make bind fail
        self._socket_path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(
            self._serve_client, path=str(self._socket_path)
        )
        self._socket_path.chmod(0o600)
        logger.info(
            "rpc_server_started",
            extra={"socket": str(self._socket_path), "rpc.methods": len(self._methods)},
        )

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
            for writer in list(self._clients):
                writer.close()
            await server.wait_closed()
        self._socket_path.unlink(missing_ok=True)
        logger.info("rpc_server_stopped")

    async def _serve_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._clients.add(writer)
        try:
            while self.is_running:
                frame = await read_message(reader)
                if frame is None:
                    break
                response = await self.handle_frame(frame)
                writer.write(response.to_bytes())
                await writer.drain()
        except (ConnectionError, ValueError) as e:
            logger.warning("rpc_connection_error", extra={"error.message": str(e)})
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def handle_frame(self, frame: bytes) -> RPCResponse:
        parsed = parse_request(frame)
        if isinstance(parsed, RPCResponse):
            return parsed
        return await self.dispatch(parsed)

    async def dispatch(self, request: RPCRequest) -> RPCResponse:
        handler = self._methods.get(request.method)
        if handler is None:
            return RPCResponse.error_response(
                request.id, ErrorCode.METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )

        logger.debug("rpc_call", extra={"rpc.method": request.method})
        try:
            result = await handler(request.params)
        except DemonError as e:
            return RPCResponse.error_response(request.id, error_code_for(e), str(e))
        except (TypeError, KeyError, ValueError) as e:
            return RPCResponse.error_response(
                request.id, ErrorCode.INVALID_PARAMS, f"Invalid params: {e}"
            )
        except Exception as e:
            logger.exception("rpc_method_failed", extra={"rpc.method": request.method})
            return RPCResponse.error_response(request.id, ErrorCode.INTERNAL_ERROR, str(e))
        return RPCResponse.success(request.id, result)
