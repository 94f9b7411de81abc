"""Control channel: JSON-RPC over a unix socket."""

from demon.rpc.client import rpc_call
from demon.rpc.methods import (
    register_all_methods,
    result_to_dict,
    snapshot_to_dict,
)
from demon.rpc.protocol import ErrorCode, RPCError, RPCRequest, RPCResponse
from demon.rpc.server import RPCServer

__all__ = [
    "ErrorCode",
    "RPCError",
    "RPCRequest",
    "RPCResponse",
    "RPCServer",
    "register_all_methods",
    "result_to_dict",
    "rpc_call",
    "snapshot_to_dict",
]
