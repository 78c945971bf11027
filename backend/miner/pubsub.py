"""Twitch PubSub websocket client with keepalive and auto-reconnect.

Inbound MESSAGE frames are decoded and published to ``PubSubClient.messages``
(an ``asyncio.Queue``) for a single consumer to process in arrival order.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from miner.core.constants import PUBSUB_URL
from miner.errors import ListenError, ListenTimeout, PubSubConnectError, PubSubNotConnected

logger = logging.getLogger(__name__)

WebSocketFactory = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class PubSubMessage:
    topic: str
    message_type: str
    data: dict[str, Any] = field(default_factory=dict)
    received_at: float = 0.0

    @property
    def topic_type(self) -> str:
        return self.topic.split(".", 1)[0]

    @property
    def topic_id(self) -> str:
        parts = self.topic.split(".", 1)
        return parts[1] if len(parts) > 1 else ""


def requires_auth(topic: str) -> bool:
    """User-scoped topics need the OAuth token in the LISTEN request."""
    return "user-v1" in topic


class PubSubClient:
    """Single-connection PubSub client.

    Transport errors after ``connect()`` never reach callers: a dropped socket,
    a server RECONNECT or a missing PONG all go through the same jittered
    reconnect, which re-subscribes every topic that was active.
    """

    def __init__(
        self,
        auth_token: str | None = None,
        *,
        url: str = PUBSUB_URL,
        ws_connect: WebSocketFactory | None = None,
        listen_timeout: float = 10.0,
        pong_timeout: float = 300.0,
        ping_interval: tuple[float, float] = (25.0, 30.0),
        reconnect_delay: tuple[float, float] = (30.0, 60.0),
        clock: Callable[[], float] = time.time,
    ):
        self.auth_token = auth_token
        self.url = url
        self.listen_timeout = listen_timeout
        self.pong_timeout = pong_timeout
        self.ping_interval = ping_interval
        self.reconnect_delay = reconnect_delay
        self.messages: asyncio.Queue[PubSubMessage] = asyncio.Queue()
        self.last_pong: float = 0.0

        self._ws_connect = ws_connect
        self._clock = clock
        self._session: aiohttp.ClientSession | None = None
        self._ws: Any = None
        self._topics: list[str] = []
        self._restore: list[str] = []
        self._pending: dict[str, tuple[str, asyncio.Future[None]]] = {}
        self._forced_close = False
        self._reconnecting = False
        self._reader_task: asyncio.Task | None = None
        self._ping_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    def set_auth_token(self, token: str | None) -> None:
        self.auth_token = token

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def topics(self) -> list[str]:
        return list(self._topics)

    # ==================== Connection ====================

    async def connect(self) -> None:
        """Open the websocket. Raises ``PubSubConnectError`` on failure."""
        self._forced_close = False
        try:
            await self._open()
        except Exception as e:
            raise PubSubConnectError(f"PubSub connection failed: {e}") from e
        logger.info("Connected to PubSub")

    async def _open(self) -> None:
        if self._ws_connect is not None:
            ws = await self._ws_connect(self.url)
        else:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            ws = await self._session.ws_connect(self.url, autoping=True)

        self._ws = ws
        self.last_pong = self._clock()
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._ping_task = asyncio.create_task(self._ping_loop(ws))

    async def disconnect(self) -> None:
        """Close for good: no reconnect, all subscription state dropped."""
        self._forced_close = True
        reconnect_task, self._reconnect_task = self._reconnect_task, None
        if reconnect_task is not None and reconnect_task is not asyncio.current_task():
            reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reconnect_task

        await self._close_socket()
        self._topics.clear()
        self._restore.clear()
        self._fail_pending(PubSubNotConnected("PubSub disconnected"))

        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Disconnected from PubSub")

    async def _close_socket(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in (self._reader_task, self._ping_task) if t is not None and t is not current]
        self._reader_task = self._ping_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing PubSub socket: {e}")

    # ==================== Subscriptions ====================

    async def listen(self, topic: str, requires_auth: bool = False) -> None:
        """Subscribe to a topic and wait for the server's acknowledgment."""
        if topic in self._topics:
            return
        if not self.is_connected:
            raise PubSubNotConnected(f"Cannot LISTEN {topic}: not connected")

        nonce = secrets.token_hex(15)
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[nonce] = (topic, future)

        data: dict[str, Any] = {"topics": [topic]}
        if requires_auth and self.auth_token:
            data["auth_token"] = self.auth_token

        try:
            await self._send({"type": "LISTEN", "nonce": nonce, "data": data})
            await asyncio.wait_for(future, timeout=self.listen_timeout)
        except asyncio.TimeoutError:
            raise ListenTimeout(topic, self.listen_timeout) from None
        finally:
            self._pending.pop(nonce, None)

        if topic not in self._topics:
            self._topics.append(topic)
        logger.debug(f"Listening to {topic}")

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for _, future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _send(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise PubSubNotConnected("PubSub socket is closed")
        await ws.send_str(json.dumps(payload))

    # ==================== Inbound ====================

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"PubSub read error: {e}")

        if ws is self._ws:
            logger.warning("PubSub connection closed")
            self._fail_pending(PubSubNotConnected("PubSub connection closed"))
            self._schedule_reconnect()

    def _handle_frame(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning(f"Undecodable PubSub frame: {raw[:200]}")
            return

        frame_type = envelope.get("type")
        if frame_type == "PONG":
            self.last_pong = self._clock()
        elif frame_type == "RESPONSE":
            self._handle_response(envelope)
        elif frame_type == "MESSAGE":
            self._handle_message(envelope.get("data") or {})
        elif frame_type == "RECONNECT":
            logger.info("PubSub server requested reconnect")
            self._schedule_reconnect()

    def _handle_response(self, envelope: dict[str, Any]) -> None:
        entry = self._pending.get(envelope.get("nonce", ""))
        if entry is None:
            return
        topic, future = entry
        if future.done():
            return
        error = envelope.get("error")
        if error:
            future.set_exception(ListenError(topic, error))
        else:
            future.set_result(None)

    def _handle_message(self, data: dict[str, Any]) -> None:
        topic = data.get("topic")
        try:
            inner = json.loads(data.get("message") or "")
        except (TypeError, ValueError):
            logger.warning(f"Undecodable PubSub message on {topic}")
            return
        if not topic or not isinstance(inner, dict):
            return

        self.messages.put_nowait(
            PubSubMessage(
                topic=topic,
                message_type=str(inner.get("type", "")),
                data=inner,
                received_at=self._clock(),
            )
        )

    # ==================== Keepalive ====================

    async def _ping_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(random.uniform(*self.ping_interval))
            if ws is not self._ws:
                return
            if self._clock() - self.last_pong > self.pong_timeout:
                logger.warning("No PONG from PubSub, reconnecting")
                self._schedule_reconnect()
                return
            try:
                await self._send({"type": "PING"})
            except Exception as e:
                logger.warning(f"PubSub PING failed: {e}")
                self._schedule_reconnect()
                return

    # ==================== Reconnect ====================

    def _schedule_reconnect(self) -> None:
        if self._forced_close or self._reconnecting:
            return
        self._reconnecting = True
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self._close_socket()
            for topic in self._topics:
                if topic not in self._restore:
                    self._restore.append(topic)
            self._topics.clear()

            while not self._forced_close:
                delay = random.uniform(*self.reconnect_delay)
                logger.info(f"Reconnecting to PubSub in {delay:.0f}s")
                await asyncio.sleep(delay)
                if self._forced_close:
                    return
                try:
                    await self._open()
                except Exception as e:
                    logger.error(f"PubSub reconnect failed: {e}")
                    continue
                break
        finally:
            self._reconnecting = False
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

        if self._forced_close:
            return
        logger.info("Reconnected to PubSub")
        await self._restore_topics()

    async def _restore_topics(self) -> None:
        for topic in list(self._restore):
            try:
                await self.listen(topic, requires_auth=requires_auth(topic))
            except PubSubNotConnected:
                # Socket dropped again; the next reconnect picks up the rest
                return
            except ListenError as e:
                logger.error(f"Failed to re-subscribe {topic}: {e}")
            if topic in self._restore:
                self._restore.remove(topic)
