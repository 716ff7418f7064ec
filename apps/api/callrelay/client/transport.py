"""Persistent WebSocket connection from a client to the signaling relay."""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from contextlib import suppress
from typing import Awaitable, Callable, Deque, Iterable, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.config import settings

MessageHandler = Callable[[dict], Awaitable[None]]
OpenHandler = Callable[[bool], Awaitable[None]]
ReconnectingHandler = Callable[[int], Awaitable[None]]
FailureHandler = Callable[["TransportError"], Awaitable[None]]

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when the relay stays unreachable after every reconnect attempt."""


class SignalingTransport:
    """Send and receive JSON envelopes, queueing while the socket is down.

    A dropped connection is retried ``reconnect_attempts`` times with a fixed
    delay. ``on_open`` runs after every successful connect, before queued
    messages are flushed; ``on_failure`` runs once attempts are exhausted.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        *,
        on_open: OpenHandler | None = None,
        on_reconnecting: ReconnectingHandler | None = None,
        on_failure: FailureHandler | None = None,
        reconnect_attempts: int | None = None,
        reconnect_delay: float | None = None,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._on_open = on_open
        self._on_reconnecting = on_reconnecting
        self._on_failure = on_failure
        self._attempts = settings.reconnect_attempts if reconnect_attempts is None else reconnect_attempts
        self._delay = settings.reconnect_delay_seconds if reconnect_delay is None else reconnect_delay

        self._ws = None
        self._ready = False
        self._closing = False
        self._queue: Deque[Tuple[str, str]] = deque()
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._last_error: Exception | None = None

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def open(self) -> None:
        """Connect to the relay, retrying; raise TransportError on exhaustion."""

        self._closing = False
        await self._establish(reconnecting=False)

    async def send(self, message: dict) -> bool:
        """Send now if connected, otherwise queue. Returns True when sent."""

        payload = json.dumps(message)
        if self._ready and self._ws is not None:
            try:
                await self._ws.send(payload)
                return True
            except ConnectionClosed:
                self._ready = False
        if self._closing:
            return False
        logger.debug("Connection not ready, queueing %s", message.get("type"))
        self._queue.append((str(message.get("type", "")), payload))
        return False

    def drop_queued(self, message_types: Iterable[str]) -> int:
        """Discard queued messages of the given types; return how many."""

        doomed = set(message_types)
        kept = [(kind, payload) for kind, payload in self._queue if kind not in doomed]
        dropped = len(self._queue) - len(kept)
        self._queue = deque(kept)
        return dropped

    async def close(self) -> None:
        self._closing = True
        self._ready = False

        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        self._queue.clear()

    async def _establish(self, *, reconnecting: bool) -> None:
        if not reconnecting and await self._try_connect(reconnected=False):
            return

        for attempt in range(1, self._attempts + 1):
            if self._closing:
                return
            if self._on_reconnecting is not None:
                await self._on_reconnecting(attempt)
            await asyncio.sleep(self._delay)
            if self._closing:
                return
            if await self._try_connect(reconnected=reconnecting):
                return

        raise TransportError(
            f"Signaling server unreachable after {self._attempts} reconnect attempts"
        ) from self._last_error

    async def _try_connect(self, *, reconnected: bool) -> bool:
        try:
            ws = await websockets.connect(self._url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            self._last_error = exc
            logger.warning("Could not connect to %s: %s", self._url, exc)
            return False

        self._ws = ws
        self._ready = True
        logger.info("Connected to signaling server %s", self._url)
        if self._on_open is not None:
            await self._on_open(reconnected)
        await self._flush()
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        return True

    async def _flush(self) -> None:
        while self._queue and self._ready and self._ws is not None:
            kind, payload = self._queue.popleft()
            try:
                await self._ws.send(payload)
            except ConnectionClosed:
                self._queue.appendleft((kind, payload))
                self._ready = False

    async def _receive_loop(self, ws) -> None:
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring non-JSON frame from relay")
                    continue
                if not isinstance(message, dict):
                    continue
                try:
                    await self._on_message(message)
                except Exception:  # noqa: BLE001 - one bad envelope must not kill the loop
                    logger.exception("Signaling handler failed for %s", message.get("type"))
        except ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)

        if ws is self._ws:
            self._ws = None
            self._ready = False
        if self._closing:
            return

        logger.warning("Disconnected from signaling server; reconnecting")
        try:
            await self._establish(reconnecting=True)
        except TransportError as exc:
            logger.error("%s", exc)
            if self._on_failure is not None:
                await self._on_failure(exc)
