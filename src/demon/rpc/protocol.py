"""Wire format for the control socket.

A frame is a 4-byte big-endian payload length followed by one UTF-8 JSON
document holding a JSON-RPC 2.0 request or response.
"""

import asyncio
import json
import socket
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from demon.errors import ControlError

HEADER = struct.Struct("!I")
MAX_FRAME_BYTES = 10 * 1024 * 1024


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    VALIDATION_ERROR = -32001
    DUPLICATE_ID = -32002
    JOB_NOT_FOUND = -32003
    ALREADY_RUNNING = -32004
    PERSISTENCE_ERROR = -32005
    GATEWAY_UNAVAILABLE = -32006


def encode_frame(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload, default=str).encode()
    return HEADER.pack(len(body)) + body


def frame_length(header: bytes) -> int:
    (length,) = HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise ValueError(f"Frame of {length} bytes exceeds {MAX_FRAME_BYTES}")
    return length


@dataclass
class RPCRequest:
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: int | str = 1
    jsonrpc: str = "2.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": self.jsonrpc,
            "method": self.method,
            "params": self.params,
            "id": self.id,
        }

    def to_bytes(self) -> bytes:
        return encode_frame(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RPCRequest":
        return cls(
            method=data.get("method") or "",
            params=data.get("params") or {},
            id=data.get("id", 1),
            jsonrpc=data.get("jsonrpc", "2.0"),
        )


@dataclass
class RPCError:
    code: int
    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": int(self.code), "message": self.message}
        if self.data is not None:
            out["data"] = self.data
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RPCError":
        return cls(
            code=data.get("code", ErrorCode.INTERNAL_ERROR),
            message=data.get("message", "Unknown error"),
            data=data.get("data"),
        )


@dataclass
class RPCResponse:
    """A response carries either ``result`` or ``error``, never both."""

    id: int | str | None
    result: Any = None
    error: RPCError | None = None
    jsonrpc: str = "2.0"

    @classmethod
    def success(cls, id: int | str | None, result: Any) -> "RPCResponse":
        return cls(id=id, result=result)

    @classmethod
    def error_response(
        cls, id: int | str | None, code: int, message: str, data: Any = None
    ) -> "RPCResponse":
        return cls(id=id, error=RPCError(code, message, data))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is None:
            out["result"] = self.result
        else:
            out["error"] = self.error.to_dict()
        return out

    def to_bytes(self) -> bytes:
        return encode_frame(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RPCResponse":
        error = data.get("error")
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=RPCError.from_dict(error) if error is not None else None,
            jsonrpc=data.get("jsonrpc", "2.0"),
        )

    def unwrap(self) -> Any:
        """Return the result, raising ``ControlError`` for an error response."""
        if self.error is not None:
            raise ControlError(self.error.message, code=self.error.code)
        return self.result


async def read_message(reader: asyncio.StreamReader) -> bytes | None:
    """Read one frame body, or None once the peer has closed."""
    try:
        length = frame_length(await reader.readexactly(HEADER.size))
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError:
        return None


def _recv_exactly(sock: socket.socket, size: int) -> bytes | None:
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            return None
        buf += chunk
    return bytes(buf)


def read_message_sync(sock: socket.socket) -> bytes | None:
    """Blocking counterpart of ``read_message`` for the CLI client."""
    header = _recv_exactly(sock, HEADER.size)
    if header is None:
        return None
    return _recv_exactly(sock, frame_length(header))
