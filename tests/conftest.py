import asyncio
import os
import sys
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

# Ensure repo root is importable when the package is not installed.
ROOT = os.path.dirname(os.path.dirname(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from node_harness.config import Config
from node_harness.gate import InstanceGate

READY_NODE = """
import sys
import time
from pathlib import Path

Path(__file__).with_suffix(".args").write_text("\\n".join(sys.argv[1:]))
print("2024-01-01 Starting dev node", flush=True)
print("2024-01-01 Development Service Ready", flush=True)
time.sleep(60)
"""

SILENT_NODE = """
import sys
import time

for i in range(1, 4):
    print(f"line {i}", flush=True)
    time.sleep(0.05)
time.sleep(60)
"""


def write_node(tmp_path: Path, body: str, name: str = "fake-node") -> str:
    path = tmp_path / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def gate() -> InstanceGate:
    return InstanceGate(poll_interval_s=0.01)


@pytest.fixture
def ready_node(tmp_path: Path) -> str:
    return write_node(tmp_path, READY_NODE)


@pytest.fixture
def silent_node(tmp_path: Path) -> str:
    return write_node(tmp_path, SILENT_NODE)


@pytest.fixture
def make_config() -> Callable[..., Config]:
    def _make(process_path: str, **overrides: Any) -> Config:
        overrides.setdefault("spawn_timeout_ms", 7000)
        return Config(process_path=process_path, **overrides)
    return _make


class FakeTransport:
    """Answers every request on the next loop iteration.

    ``responses`` maps method -> response dict; ``error`` makes every call
    fail; ``double`` fires the callback a second time with a success.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        double: bool = False,
    ) -> None:
        self.responses = responses or {}
        self.error = error
        self.double = double
        self.sent: List[Dict[str, Any]] = []
        self.closed = 0

    def send(self, payload: Dict[str, Any], callback: Callable) -> None:
        self.sent.append(payload)
        loop = asyncio.get_running_loop()
        if self.error is not None:
            loop.call_soon(callback, self.error, None)
            if self.double:
                loop.call_soon(callback, None, {"jsonrpc": "2.0", "id": payload["id"], "result": "late"})
            return
        response = self.responses.get(payload["method"], {"jsonrpc": "2.0", "id": payload["id"], "result": True})
        loop.call_soon(callback, None, response)

    async def close(self) -> None:
        self.closed += 1


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
