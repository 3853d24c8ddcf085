"""Test-group entry point: one node per group, always stopped afterwards."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

from .bridge import create_and_finalize_block, custom_request
from .config import Config
from .errors import NodeSetupTimeout
from .gate import InstanceGate, default_gate
from .logging_jsonl import JsonlLogger, NullLogger
from .supervisor import NodeHandle, ProcessSupervisor
from .transport import Transport

logger = logging.getLogger("node-harness")


@dataclass
class NodeContext:
    """What a test group sees of its node."""

    title: str
    config: Config
    connection: Optional[Transport] = None
    handle: Optional[NodeHandle] = None
    events: Any = field(default_factory=NullLogger)

    def request(self, method: str, params: Sequence[Any] = ()) -> asyncio.Future:
        if self.connection is None:
            raise RuntimeError(f"node for {self.title!r} is not running")
        return custom_request(self.connection, method, params, events=self.events)

    async def create_and_finalize_block(self) -> Any:
        if self.connection is None:
            raise RuntimeError(f"node for {self.title!r} is not running")
        return await create_and_finalize_block(self.connection, events=self.events)


class HarnessRunner:
    def __init__(
        self,
        title: str,
        config: Optional[Config] = None,
        provider: Optional[str] = None,
        gate: Optional[InstanceGate] = None,
        supervisor_factory: Callable[..., ProcessSupervisor] = ProcessSupervisor,
    ) -> None:
        config = config if config is not None else Config.from_env()
        if provider is not None:
            config = config.with_overrides(provider=provider)
        self.title = title
        self.config = config
        self.run_id = str(uuid.uuid4())
        if config.event_log_dir:
            self.events: Any = JsonlLogger(self.run_id, config.ports.rpc, config.event_log_dir)
        else:
            self.events = NullLogger()
        self.supervisor = supervisor_factory(
            config,
            gate=gate if gate is not None else default_gate(),
            events=self.events,
        )
        self.context = NodeContext(title=title, config=config, events=self.events)
        self._started_at: Optional[float] = None
        self._torn_down = False

    async def before(self) -> NodeContext:
        self._started_at = time.monotonic()
        self.events.log("group_start", title=self.title, provider=self.config.provider)
        timeout_s = self.config.setup_timeout_s
        try:
            handle = await asyncio.wait_for(self.supervisor.start(), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.error("Setup of %r timed out after %.1fs", self.title, timeout_s)
            self.events.log("group_setup_timeout", title=self.title, timeout_s=timeout_s)
            raise NodeSetupTimeout(self.title, timeout_s) from None
        self.context.handle = handle
        self.context.connection = handle.connection
        return self.context

    async def after(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        try:
            await self.supervisor.stop()
        finally:
            self.context.connection = None
            duration_ms = None
            if self._started_at is not None:
                duration_ms = int((time.monotonic() - self._started_at) * 1000)
            self.events.log("group_end", title=self.title, duration_ms=duration_ms)
            self.events.close()

    @asynccontextmanager
    async def group(self) -> AsyncIterator[NodeContext]:
        try:
            context = await self.before()
            yield context
        finally:
            await self.after()


async def describe_with_node(
    title: str,
    body: Callable[[NodeContext], Awaitable[Any]],
    config: Optional[Config] = None,
    provider: Optional[str] = None,
    gate: Optional[InstanceGate] = None,
) -> Any:
    runner = HarnessRunner(title, config=config, provider=provider, gate=gate)
    logger.info("Starting node for %r", title)
    async with runner.group() as context:
        return await body(context)
