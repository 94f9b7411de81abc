"""Tests for the JSON-RPC control channel."""

import asyncio
import json
import socket
import struct
from pathlib import Path

import pytest

from demon.errors import ControlError, DuplicateId, JobNotFound, ValidationError
from demon.rpc.client import rpc_call
from demon.rpc.protocol import ErrorCode, RPCRequest, RPCResponse, read_message_sync
from demon.rpc.server import RPCServer, error_code_for


@pytest.fixture
async def server(tmp_path: Path):
    rpc = RPCServer(tmp_path / "t.sock")

    async def echo(params):
        return {"echo": params}

    async def missing(params):
        raise JobNotFound(params["id"])

    async def bad(params):
        raise KeyError("id")

    rpc.register("test.echo", echo)
    rpc.register("test.missing", missing)
    rpc.register("test.bad", bad)
    await rpc.start()
    yield rpc
    await rpc.stop()


async def call(rpc: RPCServer, method: str, params=None):
    return await asyncio.to_thread(rpc_call, rpc.socket_path, method, params)


class TestProtocol:
    def test_request_frame(self):
        data = RPCRequest(method="job.list", id=7).to_bytes()
        (length,) = struct.unpack("!I", data[:4])
        assert length == len(data) - 4
        assert json.loads(data[4:]) == {
            "jsonrpc": "2.0",
            "method": "job.list",
            "params": {},
            "id": 7,
        }

    def test_error_response(self):
        response = RPCResponse.from_dict(
            RPCResponse.error_response(1, ErrorCode.JOB_NOT_FOUND, "nope").to_dict()
        )
        assert response.error.code == -32003
        assert response.result is None

    def test_read_message_sync(self):
        left, right = socket.socketpair()
        try:
            left.sendall(RPCResponse.success(1, {"ok": True}).to_bytes())
            assert json.loads(read_message_sync(right))["result"] == {"ok": True}
            left.close()
            assert read_message_sync(right) is None
        finally:
            right.close()

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (DuplicateId("x"), -32002),
            (ValidationError("bad"), -32001),
            (JobNotFound("x"), -32003),
        ],
    )
    def test_error_codes(self, error, code):
        assert error_code_for(error) == code


class TestServer:
    @pytest.mark.asyncio
    async def test_round_trip(self, server: RPCServer):
        assert await call(server, "test.echo", {"a": 1}) == {"echo": {"a": 1}}

    @pytest.mark.asyncio
    async def test_socket_is_private(self, server: RPCServer):
        assert server.socket_path.stat().st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_unknown_method(self, server: RPCServer):
        with pytest.raises(ControlError) as exc_info:
            await call(server, "test.nope")
        assert exc_info.value.code == ErrorCode.METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_domain_error(self, server: RPCServer):
        with pytest.raises(ControlError, match="not found") as exc_info:
            await call(server, "test.missing", {"id": "ghost"})
        assert exc_info.value.code == ErrorCode.JOB_NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalid_params(self, server: RPCServer):
        with pytest.raises(ControlError) as exc_info:
            await call(server, "test.bad")
        assert exc_info.value.code == ErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_parse_error(self, server: RPCServer):
        def send_garbage() -> dict:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(5)
            try:
                sock.connect(str(server.socket_path))
                payload = b"{not json"
                sock.sendall(struct.pack("!I", len(payload)) + payload)
                return json.loads(read_message_sync(sock))
            finally:
                sock.close()

        response = await asyncio.to_thread(send_garbage)
        assert response["error"]["code"] == ErrorCode.PARSE_ERROR

    @pytest.mark.asyncio
    async def test_stop_removes_socket(self, tmp_path: Path):
        rpc = RPCServer(tmp_path / "s.sock")
        await rpc.start()
        assert rpc.socket_path.exists()
        await rpc.stop()
        assert not rpc.socket_path.exists()


class TestClient:
    def test_missing_socket(self, tmp_path: Path):
        with pytest.raises(ConnectionError):
            rpc_call(tmp_path / "none.sock", "daemon.status")

    def test_refused(self, tmp_path: Path):
        path = tmp_path / "dead.sock"
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(str(path))
        sock.close()
        with pytest.raises(ConnectionError):
            rpc_call(path, "daemon.status")
