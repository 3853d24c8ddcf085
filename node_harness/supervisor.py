from __future__ import annotations

import asyncio
import atexit
import codecs
import enum
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import Config
from .errors import EXIT_INTERRUPTED, EXIT_SPAWN_ERROR, NodeStartTimeout
from .gate import InstanceGate, default_gate
from .logging_jsonl import NullLogger
from .transport import Transport, connect_transport

logger = logging.getLogger("node-harness")

READY_MARKER = "Development Service Ready"
BUILD_COMMAND = "cargo build --release"
CHUNK_SIZE = 4096
DRAIN_TIMEOUT_S = 5.0

RED = "\033[31m"
NC = "\033[0m"


class SupervisorState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


def build_node_args(config: Config) -> List[str]:
    return [
        "--execution=Native",  # faster than wasm execution
        "--no-telemetry",
        "--no-prometheus",
        "--dev",
        "--sealing=manual",
        f"-l{config.log_level}",
        f"--port={config.ports.p2p}",
        f"--rpc-port={config.ports.rpc}",
        f"--ws-port={config.ports.ws}",
        "--tmp",
    ]


class LogBuffer:
    """Output chunks captured while waiting for readiness, in arrival order."""

    def __init__(self) -> None:
        self._chunks: List[str] = []

    def append(self, chunk: str) -> None:
        self._chunks.append(chunk)

    def clear(self) -> None:
        self._chunks.clear()

    @property
    def chunks(self) -> List[str]:
        return list(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)


@dataclass
class NodeHandle:
    process: asyncio.subprocess.Process
    connection: Optional[Transport]
    command: List[str]
    started_at: float = field(default_factory=time.monotonic)
    connection_closed: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    async def close_connection(self) -> None:
        if self.connection_closed or self.connection is None:
            return
        self.connection_closed = True
        await self.connection.close()


TransportFactory = Callable[[Config], Awaitable[Transport]]


class ProcessSupervisor:
    def __init__(
        self,
        config: Config,
        gate: Optional[InstanceGate] = None,
        events: Any = None,
        transport_factory: TransportFactory = connect_transport,
        exit: Callable[[int], Any] = sys.exit,
        marker: str = READY_MARKER,
    ) -> None:
        self.config = config
        self.gate = gate if gate is not None else default_gate()
        self.events = events if events is not None else NullLogger()
        self.marker = marker
        self.state = SupervisorState.IDLE
        self.handle: Optional[NodeHandle] = None
        self.log_buffer = LogBuffer()
        self._transport_factory = transport_factory
        self._exit = exit
        self._process: Optional[asyncio.subprocess.Process] = None
        self._ready: Optional[asyncio.Event] = None
        self._buffering = False
        self._gate_held = False
        self._readers: List[asyncio.Task] = []
        self._watcher: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], Any]] = []

    @property
    def command(self) -> List[str]:
        return [self.config.process_path, *build_node_args(self.config)]

    @property
    def subscription_count(self) -> int:
        return len(self._unsubscribers)

    # subscriptions
    def _subscribe(self, loop: asyncio.AbstractEventLoop) -> None:
        atexit.register(self._kill_process)
        self._unsubscribers.append(lambda: atexit.unregister(self._kill_process))
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not available in all environments (e.g. outside the main thread).
            pass
        else:
            self._unsubscribers.append(lambda: loop.remove_signal_handler(signal.SIGINT))

    def _unsubscribe_all(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    def _release_gate(self) -> None:
        if self._gate_held:
            self._gate_held = False
            self.gate.release()

    def _kill_process(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _on_interrupt(self) -> None:
        logger.warning("Interrupted, killing node pid=%s", self._process.pid if self._process else None)
        self.events.log("node_interrupted")
        self._kill_process()
        self._unsubscribe_all()
        self._exit(EXIT_INTERRUPTED)

    def _on_spawn_error(self, exc: OSError) -> None:
        self.state = SupervisorState.FAILED
        self._unsubscribe_all()
        self._release_gate()
        self.events.log("node_spawn_error", reason=str(exc))
        if isinstance(exc, FileNotFoundError):
            print(
                f"{RED}Missing node binary ({self.config.process_path}).\n"
                f"Please compile the node project:\n{BUILD_COMMAND}{NC}",
                file=sys.stderr,
            )
        else:
            logger.error("Failed to spawn %s: %s", self.config.process_path, exc)
        self._exit(EXIT_SPAWN_ERROR)

    # output handling
    async def _pump(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        keep = max(len(self.marker) - 1, 0)
        tail = ""
        while True:
            data = await stream.read(CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if not text:
                continue
            if self.config.display_log:
                sys.stdout.write(text)
                sys.stdout.flush()
            if not self._buffering:
                continue
            self.log_buffer.append(text)
            window = tail + text
            if self.marker in window and self._ready is not None:
                self._ready.set()
            tail = window[-keep:] if keep else ""

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        self.events.log("node_exit", pid=process.pid, returncode=returncode)
        if process is not self._process:
            # a previous, aborted start
            return
        if self.state is SupervisorState.READY:
            logger.warning("Node pid=%d exited unexpectedly with code %s", process.pid, returncode)
            self.state = SupervisorState.STOPPED
        self._unsubscribe_all()
        self._release_gate()

    async def _terminate(self) -> None:
        self._kill_process()
        if self._watcher is not None:
            await self._watcher
        if self._readers:
            _done, pending = await asyncio.wait(self._readers, timeout=DRAIN_TIMEOUT_S)
            for task in pending:
                task.cancel()
            self._readers = []
        self._unsubscribe_all()
        self._release_gate()

    def _abort(self) -> None:
        # The gate stays held until the exit watcher sees the child go away.
        self._kill_process()
        for task in self._readers:
            task.cancel()
        self._unsubscribe_all()
        self.state = SupervisorState.FAILED

    # lifecycle
    async def start(self) -> NodeHandle:
        if self.state in (SupervisorState.STARTING, SupervisorState.READY, SupervisorState.STOPPING):
            raise RuntimeError(f"supervisor is {self.state.value}")

        await self.gate.acquire()
        self._gate_held = True
        self.events.log("gate_acquired", poll_count=self.gate.poll_count)

        loop = asyncio.get_running_loop()
        command = self.command
        self.state = SupervisorState.STARTING
        self.handle = None
        self.log_buffer = LogBuffer()
        self._ready = asyncio.Event()
        self._buffering = True
        self._subscribe(loop)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._on_spawn_error(exc)
            raise
        except asyncio.CancelledError:
            self.state = SupervisorState.FAILED
            self._unsubscribe_all()
            self._release_gate()
            raise

        self._process = process
        spawned_at = time.monotonic()
        logger.info("Spawned node pid=%d: %s", process.pid, " ".join(command))
        self.events.log("node_spawn", pid=process.pid, command=" ".join(command))
        if process.stdout is None or process.stderr is None:
            raise RuntimeError("node output pipes are not available")
        self._readers = [
            loop.create_task(self._pump(process.stdout)),
            loop.create_task(self._pump(process.stderr)),
        ]
        self._watcher = loop.create_task(self._watch_exit(process))

        timeout_s = self.config.ready_timeout_s
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            chunks = self.log_buffer.chunks
            logger.error("%sFailed to start node.%s", RED, NC)
            logger.error("Command: %s", " ".join(command))
            logger.error("Logs:\n%s", "\n".join(chunks))
            self.events.log("node_start_timeout", pid=process.pid, timeout_s=timeout_s, chunks=len(chunks))
            self.state = SupervisorState.FAILED
            await self._terminate()
            raise NodeStartTimeout(command, chunks, timeout_s) from None
        except asyncio.CancelledError:
            self._abort()
            raise

        self._buffering = False
        self.log_buffer.clear()

        try:
            connection = await self._transport_factory(self.config)
        except asyncio.CancelledError:
            self._abort()
            raise
        except Exception:
            self.state = SupervisorState.FAILED
            await self._terminate()
            raise

        ready_ms = int((time.monotonic() - spawned_at) * 1000)
        self.handle = NodeHandle(process=process, connection=connection, command=command)
        self.state = SupervisorState.READY
        logger.info("Node pid=%d ready after %d ms", process.pid, ready_ms)
        self.events.log("node_ready", pid=process.pid, ready_ms=ready_ms, provider=self.config.provider)
        return self.handle

    async def stop(self, handle: Optional[NodeHandle] = None) -> None:
        handle = handle if handle is not None else self.handle
        if self.state is SupervisorState.IDLE and handle is None:
            return
        if self.state is SupervisorState.READY:
            self.state = SupervisorState.STOPPING
        if handle is not None:
            await handle.close_connection()
        process = self._process
        if process is not None and process.returncode is None:
            self.events.log("node_stop_requested", pid=process.pid)
        await self._terminate()
        if self.state is not SupervisorState.FAILED:
            self.state = SupervisorState.STOPPED
