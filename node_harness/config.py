from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field, replace
from typing import Mapping

DEFAULT_BINARY_PATH = "../../target/release/origintrail-parachain"
DEFAULT_SPECS_PATH = "./otparachain-test-specs"
DEFAULT_P2P_PORT = 19931
DEFAULT_RPC_PORT = 19932
DEFAULT_WS_PORT = 19933
DEFAULT_LOG_LEVEL = "info"
DEFAULT_SPAWN_TIMEOUT_MS = 30000
# Readiness has to be reported before the group's own setup timeout fires.
READY_MARGIN_MS = 2000

PROVIDERS = ("http", "ws")

ENV_DISPLAY_LOG = "NODE_HARNESS_DISPLAY_LOG"
ENV_LOG_LEVEL = "NODE_HARNESS_LOG"
ENV_BINARY = "NODE_HARNESS_BINARY"
ENV_EVENT_LOG_DIR = "NODE_HARNESS_EVENT_LOG_DIR"


def _parse_bool(s: str) -> bool:
    s = (s or "").strip().lower()
    return s in ("true", "1", "yes", "y", "on")


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer value: {raw}") from exc
    if value <= 0:
        raise argparse.ArgumentTypeError(f"value must be > 0, got {value}")
    return value


def _port(raw: str) -> int:
    value = _positive_int(raw)
    if value > 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535, got {value}")
    return value


def _check_port(value: int, field_name: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{field_name} port must be an integer")
    if value < 1 or value > 65535:
        raise ValueError(f"{field_name} port must be between 1 and 65535")


@dataclass(frozen=True)
class Ports:
    p2p: int = DEFAULT_P2P_PORT
    rpc: int = DEFAULT_RPC_PORT
    ws: int = DEFAULT_WS_PORT

    def __post_init__(self) -> None:
        _check_port(self.p2p, "p2p")
        _check_port(self.rpc, "rpc")
        _check_port(self.ws, "ws")


@dataclass(frozen=True)
class Config:
    process_path: str = DEFAULT_BINARY_PATH
    ports: Ports = field(default_factory=Ports)
    specs_path: str = DEFAULT_SPECS_PATH
    log_level: str = DEFAULT_LOG_LEVEL
    display_log: bool = False
    spawn_timeout_ms: int = DEFAULT_SPAWN_TIMEOUT_MS
    provider: str = "http"
    host: str = "localhost"
    event_log_dir: str | None = None

    def __post_init__(self) -> None:
        if not self.process_path:
            raise ValueError("process_path must not be empty")
        if not self.log_level or not self.log_level.strip():
            raise ValueError("log_level must not be empty")
        if self.spawn_timeout_ms <= READY_MARGIN_MS:
            raise ValueError(f"spawn_timeout_ms must be > {READY_MARGIN_MS}, got {self.spawn_timeout_ms}")
        if self.provider not in PROVIDERS:
            raise ValueError(f"provider must be one of {PROVIDERS}, got {self.provider!r}")

    @property
    def ready_timeout_s(self) -> float:
        return (self.spawn_timeout_ms - READY_MARGIN_MS) / 1000.0

    @property
    def setup_timeout_s(self) -> float:
        return self.spawn_timeout_ms / 1000.0

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.ports.rpc}"

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.ports.ws}"

    def with_overrides(self, **changes: object) -> "Config":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        env = os.environ if environ is None else environ
        return cls(
            process_path=env.get(ENV_BINARY) or DEFAULT_BINARY_PATH,
            display_log=_parse_bool(env.get(ENV_DISPLAY_LOG, "")),
            log_level=env.get(ENV_LOG_LEVEL) or DEFAULT_LOG_LEVEL,
            event_log_dir=env.get(ENV_EVENT_LOG_DIR) or None,
        )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="node-harness",
        description="Start a development node, wait until it is ready and keep it running",
    )
    parser.add_argument("--binary", type=str, default=None, help="path to the node binary")
    parser.add_argument("--port", type=_port, default=DEFAULT_P2P_PORT, help="p2p port")
    parser.add_argument("--rpc-port", type=_port, default=DEFAULT_RPC_PORT)
    parser.add_argument("--ws-port", type=_port, default=DEFAULT_WS_PORT)
    parser.add_argument("--log", type=str, default=None, help="node log level passed as -l<level>")
    parser.add_argument("--display-log", type=str, default=None, help="echo node output (true/false)")
    parser.add_argument("--spawn-timeout-ms", type=_positive_int, default=DEFAULT_SPAWN_TIMEOUT_MS)
    parser.add_argument("--provider", choices=PROVIDERS, default="http")
    parser.add_argument("--event-log-dir", type=str, default=None)
    parser.add_argument("--blocks", type=int, default=0, help="finalized blocks to produce once ready")
    parser.add_argument("--hold", type=str, default="true", help="keep the node running until interrupted")
    return parser


def parse_config(
    argv: list[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[Config, argparse.Namespace]:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    base = Config.from_env(environ)

    if args.spawn_timeout_ms <= READY_MARGIN_MS:
        parser.error(f"--spawn-timeout-ms must be > {READY_MARGIN_MS}")
    if args.blocks < 0:
        parser.error("--blocks must be >= 0")

    config = base.with_overrides(
        process_path=args.binary or base.process_path,
        ports=Ports(p2p=args.port, rpc=args.rpc_port, ws=args.ws_port),
        log_level=args.log or base.log_level,
        display_log=base.display_log if args.display_log is None else _parse_bool(args.display_log),
        spawn_timeout_ms=args.spawn_timeout_ms,
        provider=args.provider,
        event_log_dir=args.event_log_dir or base.event_log_dir,
    )
    return config, args
