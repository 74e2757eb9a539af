"""Single multiplexed JSON-RPC websocket to the chain node.

One ``aiohttp`` websocket carries every contract read (``eth_call``) and every
log subscription (``eth_subscribe``) of a session. Responses are correlated by
request id; ``eth_subscription`` notifications are routed by subscription id to
the handler owned by a ``LogSubscription`` handle.

Handlers run as separate tasks so they may themselves issue requests over the
same socket without blocking the read loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from pricefeed.utils.logger import get_logger

logger = get_logger("chain_stream")

LogHandler = Callable[[dict[str, Any]], Awaitable[None]]


# ================================================================
# Error types
# ================================================================


class ChainStreamError(Exception):
    """Base error for chain node calls."""


class ChainConnectionError(ChainStreamError):
    """Websocket unreachable or dropped."""


class ChainRequestTimeout(ChainStreamError):
    """No response within the request timeout."""


class ChainRPCError(ChainStreamError):
    """Node answered with a JSON-RPC error object."""


# ================================================================
# Subscription handle
# ================================================================


@dataclass(eq=False)
class LogSubscription:
    """Handle for one live ``eth_subscribe("logs")`` listener.

    ``dispose()`` detaches the handler synchronously; notifications that
    arrive afterwards are dropped. The node-side unsubscribe is best-effort.
    """

    subscription_id: str
    address: str
    handler: LogHandler
    _stream: ChainStream = field(repr=False)
    active: bool = True

    def dispose(self) -> None:
        if not self.active:
            return
        self.active = False
        self._stream._detach(self)


# ================================================================
# Stream
# ================================================================


class ChainStream:
    """Async JSON-RPC client over one websocket.

    Args:
        url: Websocket RPC endpoint (wss://...).
        request_timeout_s: Per-request response timeout.
        heartbeat_s: Websocket ping interval.
        session: Optional shared aiohttp session.
    """

    def __init__(
        self,
        url: str,
        request_timeout_s: float = 10.0,
        heartbeat_s: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._request_timeout_s = request_timeout_s
        self._heartbeat_s = heartbeat_s
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._pending_subs: dict[int, LogSubscription] = {}
        self._subscriptions: dict[str, LogSubscription] = {}
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._closed = asyncio.Event()
        self._closed.set()
        self._notifications = 0

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closed.is_set()

    async def connect(self) -> None:
        """Open the websocket and start the read loop.

        Raises:
            ChainConnectionError: If the endpoint is unreachable.
        """
        if self.is_connected:
            return
        if not self._url:
            raise ChainConnectionError("WS_RPC_URL not configured")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(
                self._url, heartbeat=self._heartbeat_s, max_msg_size=0
            )
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            raise ChainConnectionError(f"Connect failed: {e}") from e

        self._closed.clear()
        self._reader = asyncio.create_task(self._read_loop(), name="chain_stream_reader")
        logger.info("chain_stream_connected")

    async def close(self) -> None:
        """Close the socket, fail pending requests and drop all subscriptions."""
        if self._reader and not self._reader.done():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self._reader = None
        if self._ws and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        self._mark_closed("closed")
        for task in list(self._handler_tasks):
            task.cancel()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def wait_closed(self) -> None:
        """Block until the connection drops or is closed."""
        await self._closed.wait()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Send one JSON-RPC request and await its result.

        Raises:
            ChainConnectionError: Not connected, or connection lost mid-request.
            ChainRequestTimeout: No response within the request timeout.
            ChainRPCError: Node returned an error object.
        """
        return await self._send(method, params or [])

    async def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        return await self.request("eth_call", [{"to": to, "data": data}, block])

    async def block_number(self) -> int:
        return int(await self.request("eth_blockNumber"), 16)

    async def subscribe_logs(
        self,
        address: str,
        topics: list[str],
        handler: LogHandler,
    ) -> LogSubscription:
        """Subscribe to logs emitted by ``address`` matching ``topics``.

        The handle is registered before the subscribe response is resolved, so
        no notification racing the response is lost.
        """
        sub = LogSubscription(subscription_id="", address=address, handler=handler, _stream=self)
        await self._send(
            "eth_subscribe",
            ["logs", {"address": address, "topics": topics}],
            pending_sub=sub,
        )
        logger.debug("log_subscription_open", address=address, sub_id=sub.subscription_id)
        return sub

    async def _send(
        self,
        method: str,
        params: list[Any],
        pending_sub: LogSubscription | None = None,
    ) -> Any:
        if not self.is_connected or self._ws is None:
            raise ChainConnectionError(f"Not connected ({method})")

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        if pending_sub is not None:
            self._pending_subs[request_id] = pending_sub

        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            await self._ws.send_str(json.dumps(payload))
            return await asyncio.wait_for(future, timeout=self._request_timeout_s)
        except TimeoutError as e:
            raise ChainRequestTimeout(f"{method} timed out") from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ChainConnectionError(f"Send failed: {e}") from e
        finally:
            self._pending.pop(request_id, None)
            self._pending_subs.pop(request_id, None)

    # ------------------------------------------------------------------
    # Read loop and dispatch
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        if self._ws is None:
            return
        reason = "eof"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_message(msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    reason = msg.type.name.lower()
                    break
        except asyncio.CancelledError:
            reason = "cancelled"
            raise
        except Exception as e:
            reason = str(e)
            logger.error("chain_stream_read_error", error=str(e))
        finally:
            self._mark_closed(reason)

    def _handle_message(self, raw: str) -> None:
        """Route one inbound frame: response by id, notification by subscription."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.debug("chain_stream_bad_frame", error=str(e))
            return

        messages = data if isinstance(data, list) else [data]
        for message in messages:
            if not isinstance(message, dict):
                continue
            if message.get("method") == "eth_subscription":
                self._dispatch_notification(message.get("params") or {})
            elif "id" in message:
                self._dispatch_response(message)

    def _dispatch_response(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        future = self._pending.get(request_id)  # type: ignore[arg-type]
        if future is None or future.done():
            return

        error = message.get("error")
        if error:
            text = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            future.set_exception(ChainRPCError(text))
            return

        result = message.get("result")
        sub = self._pending_subs.get(request_id)  # type: ignore[arg-type]
        if sub is not None and isinstance(result, str):
            sub.subscription_id = result
            self._subscriptions[result] = sub
        future.set_result(result)

    def _dispatch_notification(self, params: dict[str, Any]) -> None:
        sub = self._subscriptions.get(params.get("subscription", ""))
        if sub is None or not sub.active:
            return
        result = params.get("result")
        if not isinstance(result, dict):
            return
        self._notifications += 1
        task = asyncio.create_task(self._run_handler(sub, result))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, sub: LogSubscription, log: dict[str, Any]) -> None:
        if not sub.active:
            return
        try:
            await sub.handler(log)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("log_handler_error", address=sub.address, error=str(e))

    def _detach(self, sub: LogSubscription) -> None:
        """Remove a disposed handle; unsubscribe node-side if still connected."""
        if sub.subscription_id:
            self._subscriptions.pop(sub.subscription_id, None)
        if sub.subscription_id and self.is_connected:
            task = asyncio.create_task(self._unsubscribe(sub.subscription_id))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _unsubscribe(self, subscription_id: str) -> None:
        try:
            await self._send("eth_unsubscribe", [subscription_id])
        except ChainStreamError as e:
            logger.debug("eth_unsubscribe_failed", sub_id=subscription_id, error=str(e))

    def _mark_closed(self, reason: str) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ChainConnectionError(f"Connection lost: {reason}"))
        self._pending.clear()
        self._pending_subs.clear()
        for sub in self._subscriptions.values():
            sub.active = False
        self._subscriptions.clear()
        logger.warning("chain_stream_closed", reason=reason)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "subscriptions": len(self._subscriptions),
            "pending_requests": len(self._pending),
            "notifications": self._notifications,
        }
