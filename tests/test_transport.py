import asyncio
import socket

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web

from node_harness.bridge import create_and_finalize_block, custom_request
from node_harness.config import Config, Ports
from node_harness.errors import CustomRequestError
from node_harness.transport import HttpTransport, WsTransport, connect_transport


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def _rpc_handler(request: web.Request) -> web.Response:
    body = await request.json()
    if body["method"] == "fail_http":
        return web.Response(status=500, text="internal error")
    if body["method"] == "engine_createBlock":
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": {"hash": "0xabc"}})
    return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": body["method"]})


async def _ws_handler(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    held = []
    async for msg in ws:
        if msg.type != WSMsgType.TEXT:
            continue
        body = msg.json()
        if body["method"] == "close_me":
            await ws.close()
            break
        if body["method"] == "hold":
            held.append(body)
            continue
        await ws.send_json({"jsonrpc": "2.0", "method": "eth_subscription", "params": {}})
        await ws.send_json({"jsonrpc": "2.0", "id": body["id"], "result": body["method"]})
        # answer held requests after the newer one
        for old in held:
            await ws.send_json({"jsonrpc": "2.0", "id": old["id"], "result": "held"})
        held.clear()
    return ws


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app.router.add_post("/", _rpc_handler)
    app.router.add_get("/ws", _ws_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    port = _free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    yield port
    await runner.cleanup()


@pytest.mark.asyncio
async def test_http_round_trip(server):
    transport = HttpTransport(f"http://127.0.0.1:{server}/")
    try:
        response = await custom_request(transport, "eth_chainId", [])
        assert response["result"] == "eth_chainId"
        assert await create_and_finalize_block(transport) == {"hash": "0xabc"}
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_http_status_error_rejects(server):
    transport = HttpTransport(f"http://127.0.0.1:{server}/")
    try:
        with pytest.raises(CustomRequestError, match=r"^Failed to send custom request \(fail_http \(1,2\)\): "):
            await custom_request(transport, "fail_http", [1, 2])
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_http_connection_refused_rejects():
    transport = HttpTransport(f"http://127.0.0.1:{_free_port()}/", timeout_s=5.0)
    try:
        with pytest.raises(CustomRequestError, match="eth_blockNumber"):
            await custom_request(transport, "eth_blockNumber", [])
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_ws_correlates_by_id(server):
    transport = WsTransport(f"ws://127.0.0.1:{server}/ws")
    await transport.connect()
    try:
        held = custom_request(transport, "hold", [])
        fresh = await custom_request(transport, "eth_chainId", [])
        assert fresh["result"] == "eth_chainId"
        assert (await asyncio.wait_for(held, timeout=2))["result"] == "held"
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_ws_close_fails_pending(server):
    transport = WsTransport(f"ws://127.0.0.1:{server}/ws")
    await transport.connect()
    try:
        pending = custom_request(transport, "hold", [])
        with pytest.raises(CustomRequestError, match="close_me"):
            await asyncio.wait_for(custom_request(transport, "close_me", []), timeout=2)
        with pytest.raises(CustomRequestError, match=r"\(hold \(\)\): websocket .* closed"):
            await asyncio.wait_for(pending, timeout=2)
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_ws_send_before_connect_rejects():
    transport = WsTransport("ws://127.0.0.1:1/ws")
    with pytest.raises(CustomRequestError, match="not connected"):
        await custom_request(transport, "eth_chainId", [])


@pytest.mark.asyncio
async def test_connect_transport_picks_provider():
    transport = await connect_transport(Config(ports=Ports(rpc=19999)))
    assert isinstance(transport, HttpTransport)
    assert transport.url == "http://localhost:19999"
    await transport.close()
