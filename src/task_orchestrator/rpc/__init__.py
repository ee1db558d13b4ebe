"""Line-delimited JSON-RPC 2.0 front end for the scheduler."""

from task_orchestrator.rpc.handlers import RpcMethods
from task_orchestrator.rpc.protocol import RpcError
from task_orchestrator.rpc.server import ProtocolServer, ServerState

__all__ = ["ProtocolServer", "RpcError", "RpcMethods", "ServerState"]
