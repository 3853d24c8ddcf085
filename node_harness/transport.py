from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol, Set

import aiohttp

from .config import Config

logger = logging.getLogger("node-harness")

Callback = Callable[[Optional[BaseException], Optional[Dict[str, Any]]], None]


class Transport(Protocol):
    """Callback-based JSON-RPC send primitive."""

    def send(self, payload: Dict[str, Any], callback: Callback) -> None:
        ...

    async def close(self) -> None:
        ...


class HttpTransport:
    def __init__(self, url: str, timeout_s: float = 30.0) -> None:
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._tasks: Set[asyncio.Task] = set()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def send(self, payload: Dict[str, Any], callback: Callback) -> None:
        task = asyncio.get_running_loop().create_task(self._post(payload, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, payload: Dict[str, Any], callback: Callback) -> None:
        try:
            async with self._get_session().post(self.url, json=payload) as resp:
                resp.raise_for_status()
                body = await resp.json(content_type=None)
        except asyncio.CancelledError:
            callback(ConnectionError("transport closed"), None)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            callback(exc, None)
            return
        callback(None, body)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
            self._session = None


class WsTransport:
    def __init__(self, url: str, timeout_s: float = 30.0) -> None:
        self.url = url
        self._timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[Any, Callback] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(self._session.ws_connect(self.url), self._timeout_s)
        except BaseException:
            await self._session.close()
            self._session = None
            raise
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    def send(self, payload: Dict[str, Any], callback: Callback) -> None:
        if self._ws is None or self._ws.closed:
            callback(ConnectionError(f"websocket {self.url} is not connected"), None)
            return
        self._pending[payload.get("id")] = callback
        task = asyncio.get_running_loop().create_task(self._write(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write(self, payload: Dict[str, Any]) -> None:
        try:
            if self._ws is None:
                raise ConnectionError(f"websocket {self.url} closed")
            await self._ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            callback = self._pending.pop(payload.get("id"), None)
            if callback is not None:
                callback(exc, None)

    async def _read_loop(self) -> None:
        if self._ws is None:
            raise RuntimeError(f"websocket {self.url} is not connected")
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = msg.json()
                    except ValueError:
                        logger.warning("Dropping non-JSON websocket frame from %s", self.url)
                        continue
                    if not isinstance(data, dict):
                        continue
                    callback = self._pending.pop(data.get("id"), None)
                    if callback is None:
                        # subscription notifications carry no id
                        continue
                    callback(None, data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            self._fail_pending(ConnectionError(f"websocket {self.url} closed"))

    def _fail_pending(self, exc: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for callback in pending.values():
            callback(exc, None)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._fail_pending(ConnectionError(f"websocket {self.url} closed"))
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._ws = None


async def connect_transport(config: Config) -> Transport:
    if config.provider == "http":
        return HttpTransport(config.http_url, timeout_s=config.setup_timeout_s)
    if config.provider == "ws":
        transport = WsTransport(config.ws_url, timeout_s=config.setup_timeout_s)
        await transport.connect()
        return transport
    raise ValueError(f"unknown provider: {config.provider!r}")
