"""Tests for the multiplexed JSON-RPC websocket client.

A local aiohttp websocket server plays the chain node.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest
from aiohttp import WSMsgType, test_utils, web

from pricefeed.connectors.chain_stream import (
    ChainConnectionError,
    ChainRequestTimeout,
    ChainRPCError,
    ChainStream,
)

POOL = "0x" + "ab" * 20
SUB_ID = "0xfeed"


class FakeNode:
    """Minimal JSON-RPC node: answers known methods, ignores 'hang'."""

    def __init__(self) -> None:
        self.received: list[dict[str, Any]] = []
        self.sockets: list[web.WebSocketResponse] = []

    async def handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            req = json.loads(msg.data)
            self.received.append(req)
            method, rid = req["method"], req["id"]
            if method == "eth_blockNumber":
                await ws.send_json({"jsonrpc": "2.0", "id": rid, "result": "0x2a"})
            elif method == "eth_call":
                await ws.send_json({"jsonrpc": "2.0", "id": rid, "result": "0x" + "00" * 32})
            elif method == "eth_subscribe":
                await ws.send_json({"jsonrpc": "2.0", "id": rid, "result": SUB_ID})
                # Notification right behind the response.
                await ws.send_json(
                    {
                        "jsonrpc": "2.0",
                        "method": "eth_subscription",
                        "params": {"subscription": SUB_ID, "result": {"address": POOL, "n": 1}},
                    }
                )
            elif method == "eth_unsubscribe":
                await ws.send_json({"jsonrpc": "2.0", "id": rid, "result": True})
            elif method == "boom":
                await ws.send_json(
                    {"jsonrpc": "2.0", "id": rid, "error": {"code": -32000, "message": "reverted"}}
                )
        return ws

    async def notify(self, result: dict[str, Any]) -> None:
        await self.sockets[-1].send_json(
            {
                "jsonrpc": "2.0",
                "method": "eth_subscription",
                "params": {"subscription": SUB_ID, "result": result},
            }
        )


@pytest.fixture
async def node() -> AsyncIterator[tuple[FakeNode, str]]:
    fake = FakeNode()
    app = web.Application()
    app.router.add_get("/", fake.handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield fake, str(server.make_url("/").with_scheme("ws"))
    await server.close()


@pytest.fixture
async def stream(node: tuple[FakeNode, str]) -> AsyncIterator[ChainStream]:
    _, url = node
    s = ChainStream(url, request_timeout_s=0.5, heartbeat_s=5)
    await s.connect()
    yield s
    await s.close()


class TestRequests:
    async def test_block_number(self, stream: ChainStream) -> None:
        assert await stream.block_number() == 42

    async def test_eth_call_payload(self, stream: ChainStream, node: tuple[FakeNode, str]) -> None:
        fake, _ = node
        result = await stream.eth_call(POOL, "0x3850c7bd")
        assert result == "0x" + "00" * 32
        sent = fake.received[-1]
        assert sent["params"] == [{"to": POOL, "data": "0x3850c7bd"}, "latest"]

    async def test_concurrent_requests_correlated(self, stream: ChainStream) -> None:
        results = await asyncio.gather(stream.block_number(), stream.eth_call(POOL, "0x"))
        assert results[0] == 42
        assert results[1].startswith("0x")

    async def test_rpc_error(self, stream: ChainStream) -> None:
        with pytest.raises(ChainRPCError, match="reverted"):
            await stream.request("boom")

    async def test_timeout(self, stream: ChainStream) -> None:
        with pytest.raises(ChainRequestTimeout):
            await stream.request("hang")
        assert stream.stats["pending_requests"] == 0

    async def test_not_connected(self) -> None:
        s = ChainStream("ws://127.0.0.1:1/")
        with pytest.raises(ChainConnectionError):
            await s.request("eth_blockNumber")

    async def test_connect_refused(self) -> None:
        s = ChainStream("ws://127.0.0.1:1/")
        with pytest.raises(ChainConnectionError):
            await s.connect()
        await s.close()

    async def test_missing_url(self) -> None:
        with pytest.raises(ChainConnectionError):
            await ChainStream("").connect()


class TestSubscriptions:
    async def test_notification_racing_response_is_delivered(self, stream: ChainStream) -> None:
        received: list[dict[str, Any]] = []
        got = asyncio.Event()

        async def handler(log: dict[str, Any]) -> None:
            received.append(log)
            got.set()

        sub = await stream.subscribe_logs(POOL, ["0xtopic"], handler)
        await asyncio.wait_for(got.wait(), timeout=1)

        assert sub.subscription_id == SUB_ID
        assert received[0]["n"] == 1

    async def test_dispose_stops_delivery(
        self, stream: ChainStream, node: tuple[FakeNode, str]
    ) -> None:
        fake, _ = node
        received: list[dict[str, Any]] = []

        async def handler(log: dict[str, Any]) -> None:
            received.append(log)

        sub = await stream.subscribe_logs(POOL, ["0xtopic"], handler)
        await asyncio.sleep(0.05)
        sub.dispose()
        assert not sub.active

        await fake.notify({"address": POOL, "n": 2})
        await asyncio.sleep(0.05)

        assert [r["n"] for r in received] == [1]
        assert any(r["method"] == "eth_unsubscribe" for r in fake.received)

    async def test_handler_error_does_not_break_stream(self, stream: ChainStream) -> None:
        async def handler(log: dict[str, Any]) -> None:
            raise RuntimeError("bad handler")

        await stream.subscribe_logs(POOL, ["0xtopic"], handler)
        await asyncio.sleep(0.05)
        assert await stream.block_number() == 42


class TestDisconnect:
    async def test_server_close_marks_closed(
        self, stream: ChainStream, node: tuple[FakeNode, str]
    ) -> None:
        fake, _ = node

        async def handler(log: dict[str, Any]) -> None:
            pass

        sub = await stream.subscribe_logs(POOL, ["0xtopic"], handler)
        await fake.sockets[-1].close()
        await asyncio.wait_for(stream.wait_closed(), timeout=1)

        assert not stream.is_connected
        assert not sub.active
        with pytest.raises(ChainConnectionError):
            await stream.block_number()

    async def test_reconnect_after_close(self, stream: ChainStream) -> None:
        await stream.close()
        assert not stream.is_connected
        await stream.connect()
        assert await stream.block_number() == 42
