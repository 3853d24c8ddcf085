"""Exceptions raised by the node harness."""
from __future__ import annotations

import json
from typing import Any, Sequence

# Exit statuses used when the harness has to terminate the host process.
EXIT_SPAWN_ERROR = 1
EXIT_INTERRUPTED = 2


def _render_param(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def join_params(params: Sequence[Any]) -> str:
    return ",".join(_render_param(p) for p in params)


class HarnessError(Exception):
    """Base class for harness failures"""


class CustomRequestError(HarnessError):
    """Raised when the transport fails to deliver a JSON-RPC request"""
    def __init__(self, method: str, params: Sequence[Any], reason: str):
        super().__init__(
            f"Failed to send custom request ({method} ({join_params(params)})): {reason}"
        )
        self.method = method
        self.params = list(params)
        self.reason = reason


class UnexpectedResultError(HarnessError):
    """Raised when a call that needs a result got an empty one"""
    def __init__(self, response: Any):
        try:
            rendered = json.dumps(response)
        except (TypeError, ValueError):
            rendered = repr(response)
        super().__init__(f"Unexpected result: {rendered}")
        self.response = response


class NodeStartTimeout(HarnessError):
    """Raised when the node does not report readiness before the deadline"""
    def __init__(self, command: Sequence[str], chunks: Sequence[str], timeout_s: float):
        super().__init__(f"Failed to launch node: not ready within {timeout_s:.1f}s")
        self.command = list(command)
        self.logs = list(chunks)
        self.timeout_s = timeout_s


class NodeSetupTimeout(HarnessError):
    """Raised when a group's setup (gate wait, spawn, connect) overruns its budget"""
    def __init__(self, title: str, timeout_s: float):
        super().__init__(f"Setup of {title!r} did not finish within {timeout_s:.1f}s")
        self.title = title
        self.timeout_s = timeout_s
