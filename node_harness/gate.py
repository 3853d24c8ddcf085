from __future__ import annotations

import asyncio

DEFAULT_POLL_INTERVAL_S = 0.1


class InstanceGate:
    """Allows a single node instance per host process.

    The node binds fixed ports, so every group that wants a node waits here
    until the previous instance has exited. Waiters poll; there is no FIFO
    ordering between them. The flag is a plain attribute, usable from any
    event loop.
    """

    def __init__(self, poll_interval_s: float = DEFAULT_POLL_INTERVAL_S) -> None:
        self.poll_interval_s = poll_interval_s
        self._busy = False
        self.poll_count = 0

    @property
    def busy(self) -> bool:
        return self._busy

    async def acquire(self) -> None:
        while self._busy:
            self.poll_count += 1
            await asyncio.sleep(self.poll_interval_s)
        # No await between the check and the set.
        self._busy = True

    def release(self) -> None:
        self._busy = False


_default_gate = InstanceGate()


def default_gate() -> InstanceGate:
    return _default_gate
