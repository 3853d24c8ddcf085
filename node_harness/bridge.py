"""Promise-style wrapper around a callback-based JSON-RPC transport.

Every call builds one ``PendingRequest`` whose future is settled exactly
once: the first callback invocation wins and an error always takes
precedence over a response delivered in the same invocation.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .errors import CustomRequestError, UnexpectedResultError
from .logging_jsonl import NullLogger
from .transport import Transport

JSONRPC_VERSION = "2.0"
CREATE_BLOCK_METHOD = "engine_createBlock"

_request_ids = itertools.count(1)


def _describe_error(error: BaseException) -> str:
    return str(error) or type(error).__name__


@dataclass
class PendingRequest:
    method: str
    params: List[Any]
    future: asyncio.Future
    events: Any = field(default_factory=NullLogger)

    def settle(self, error: Optional[BaseException], response: Optional[Dict[str, Any]]) -> bool:
        if self.future.done():
            return False
        if error is not None:
            reason = _describe_error(error)
            self.events.log("rpc_error", method=self.method, reason=reason)
            self.future.set_exception(CustomRequestError(self.method, self.params, reason))
            return True
        self.future.set_result(response)
        return True


def build_envelope(method: str, params: Sequence[Any]) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": next(_request_ids),
        "method": method,
        "params": list(params),
    }


def custom_request(
    transport: Transport,
    method: str,
    params: Sequence[Any] = (),
    events: Any = None,
) -> asyncio.Future:
    if not isinstance(method, str) or not method:
        raise ValueError("method must be a non-empty string")

    loop = asyncio.get_running_loop()
    pending = PendingRequest(
        method=method,
        params=list(params),
        future=loop.create_future(),
        events=events if events is not None else NullLogger(),
    )
    payload = build_envelope(method, pending.params)
    pending.events.log("rpc_request", method=method, request_id=payload["id"])
    try:
        transport.send(payload, pending.settle)
    except (OSError, RuntimeError) as exc:
        pending.settle(exc, None)
    return pending.future


async def create_and_finalize_block(transport: Transport, events: Any = None) -> Any:
    """Seal a block and finalize it.

    The block includes every transaction executed since the last
    finalized block.
    """
    response = await custom_request(transport, CREATE_BLOCK_METHOD, [True, True, None], events=events)
    if not isinstance(response, dict) or not response.get("result"):
        raise UnexpectedResultError(response)
    return response["result"]
