"""Lifecycle harness for a development node used by integration tests."""
from .bridge import create_and_finalize_block, custom_request
from .config import Config, Ports
from .errors import (
    EXIT_INTERRUPTED,
    EXIT_SPAWN_ERROR,
    CustomRequestError,
    HarnessError,
    NodeSetupTimeout,
    NodeStartTimeout,
    UnexpectedResultError,
)
from .gate import InstanceGate, default_gate
from .runner import HarnessRunner, NodeContext, describe_with_node
from .supervisor import NodeHandle, ProcessSupervisor, SupervisorState, build_node_args

__all__ = [
    "Config",
    "CustomRequestError",
    "EXIT_INTERRUPTED",
    "EXIT_SPAWN_ERROR",
    "HarnessError",
    "HarnessRunner",
    "InstanceGate",
    "NodeContext",
    "NodeHandle",
    "NodeSetupTimeout",
    "NodeStartTimeout",
    "Ports",
    "ProcessSupervisor",
    "SupervisorState",
    "UnexpectedResultError",
    "build_node_args",
    "create_and_finalize_block",
    "custom_request",
    "default_gate",
    "describe_with_node",
]
