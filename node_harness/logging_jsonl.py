"""Per-group lifecycle event log, one JSON object per line."""
from __future__ import annotations

import itertools
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


def now_ms() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)


class JsonlLogger:
    """Event log owned by one test group.

    Besides the wall-clock ``ts_ms`` every record carries ``seq`` and
    ``elapsed_ms`` (monotonic, since the log was opened) so a group's
    events stay ordered when the wall clock steps. ``rpc_port`` identifies
    the node instance the group was bound to.
    """

    def __init__(self, run_id: str, rpc_port: int, log_dir: str = "logs") -> None:
        self.run_id = run_id
        self.rpc_port = rpc_port
        self._seq = itertools.count()
        self._opened = time.monotonic()

        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / f"harness-{rpc_port}-{now_ms()}-{run_id[:8]}.jsonl"
        self._fp = self.path.open("w", encoding="utf-8", buffering=1)

    @property
    def closed(self) -> bool:
        return self._fp.closed

    def log(self, event: str, **fields: Any) -> None:
        if self._fp.closed:
            return
        record: Dict[str, Any] = {
            "ts_ms": now_ms(),
            "elapsed_ms": int((time.monotonic() - self._opened) * 1000),
            "seq": next(self._seq),
            "event": event,
            "run_id": self.run_id,
            "rpc_port": self.rpc_port,
        }
        # None means "not applicable" for every harness field
        record.update((key, value) for key, value in fields.items() if value is not None)
        self._fp.write(json.dumps(record, separators=(",", ":"), default=str) + "\n")

    def close(self) -> None:
        if not self._fp.closed:
            self._fp.close()


class NullLogger:
    """Stands in for JsonlLogger when no event log directory is configured."""

    path = None
    closed = False

    def log(self, event: str, **fields: Any) -> None:
        return None

    def close(self) -> None:
        return None
