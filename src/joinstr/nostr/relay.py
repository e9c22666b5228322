"""
Relay client (NIP-01).

``RelayClient`` owns subscription bookkeeping and frame dispatch; concrete
clients only move frames. ``WebSocketRelay`` talks to a real relay.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from typing import Any

import websockets
from loguru import logger

from joinstr.nostr.event import Event, NostrError, matches_filter

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_ACK_TIMEOUT = 10.0


class RelayError(Exception):
    pass


class Subscription:
    """Events delivered for one REQ, in arrival order."""

    def __init__(self, sub_id: str, filters: list[dict[str, Any]]):
        self.id = sub_id
        self.filters = filters
        self.eose = asyncio.Event()
        self.closed_reason: str | None = None
        self._queue: asyncio.Queue[Event | RelayError] = asyncio.Queue()

    def matches(self, event: Event) -> bool:
        return any(matches_filter(event, f) for f in self.filters)

    def deliver(self, event: Event) -> None:
        self._queue.put_nowait(event)

    def fail(self, error: RelayError) -> None:
        self._queue.put_nowait(error)

    async def next(self, timeout: float | None = None) -> Event | None:
        """
        Wait for the next event.

        Returns:
            The event, or None if ``timeout`` elapsed first

        Raises:
            RelayError: If the relay failed or closed the subscription
        """
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if isinstance(item, RelayError):
            # Keep the failure visible to later callers
            self._queue.put_nowait(item)
            raise item
        return item


class RelayClient(ABC):
    def __init__(self, url: str, ack_timeout: float = DEFAULT_ACK_TIMEOUT):
        self.url = url
        self.ack_timeout = ack_timeout
        self._subscriptions: dict[str, Subscription] = {}
        self._pending_oks: dict[str, asyncio.Future[tuple[bool, str]]] = {}
        self._failure: RelayError | None = None

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def _send(self, frame: list[Any]) -> None:
        pass

    async def close(self) -> None:
        self._fail(RelayError("Relay connection closed"))

    async def __aenter__(self) -> RelayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _check(self) -> None:
        if self._failure is not None:
            raise self._failure

    async def publish(self, event: Event) -> None:
        """
        Send an event and wait for the relay's OK.

        Raises:
            RelayError: If the relay rejects the event or does not answer in time
        """
        self._check()
        future: asyncio.Future[tuple[bool, str]] = asyncio.get_running_loop().create_future()
        self._pending_oks[event.id] = future
        try:
            await self._send(["EVENT", event.to_dict()])
            accepted, message = await asyncio.wait_for(future, timeout=self.ack_timeout)
        except asyncio.TimeoutError as e:
            raise RelayError(f"No acknowledgement from {self.url} for {event.id[:8]}") from e
        finally:
            self._pending_oks.pop(event.id, None)
        if not accepted:
            raise RelayError(f"Relay rejected event {event.id[:8]}: {message}")
        logger.debug(f"Relay accepted event {event.id[:8]} kind={event.kind}")

    async def subscribe(self, filters: list[dict[str, Any]]) -> Subscription:
        self._check()
        sub = Subscription(uuid.uuid4().hex[:16], filters)
        self._subscriptions[sub.id] = sub
        await self._send(["REQ", sub.id, *filters])
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        if self._subscriptions.pop(sub.id, None) is not None and self._failure is None:
            await self._send(["CLOSE", sub.id])

    def handle_message(self, raw: str | bytes) -> None:
        """Dispatch one frame received from the relay."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError as e:
            self._fail(RelayError(f"Malformed frame from {self.url}: {e}"))
            return
        if not isinstance(frame, list) or not frame or not isinstance(frame[0], str):
            self._fail(RelayError(f"Malformed frame from {self.url}: {str(raw)[:100]}"))
            return

        frame_type = frame[0]
        if frame_type == "EVENT" and len(frame) >= 3:
            self._handle_event(frame[1], frame[2])
        elif frame_type == "EOSE" and len(frame) >= 2:
            sub = self._subscriptions.get(frame[1])
            if sub is not None:
                sub.eose.set()
        elif frame_type == "OK" and len(frame) >= 3:
            future = self._pending_oks.get(frame[1])
            if future is not None and not future.done():
                message = frame[3] if len(frame) > 3 else ""
                future.set_result((bool(frame[2]), str(message)))
        elif frame_type == "CLOSED" and len(frame) >= 2:
            sub = self._subscriptions.pop(frame[1], None)
            if sub is not None:
                sub.closed_reason = str(frame[2]) if len(frame) > 2 else ""
                sub.fail(RelayError(f"Subscription closed by relay: {sub.closed_reason}"))
        elif frame_type == "NOTICE":
            logger.info(f"Relay notice from {self.url}: {frame[1] if len(frame) > 1 else ''}")
        else:
            logger.debug(f"Ignoring relay frame {frame_type}")

    def _handle_event(self, sub_id: Any, data: Any) -> None:
        sub = self._subscriptions.get(sub_id) if isinstance(sub_id, str) else None
        if sub is None:
            return
        try:
            event = Event.from_dict(data)
        except NostrError as e:
            logger.warning(f"Dropping malformed event from {self.url}: {e}")
            return
        if not event.verify():
            logger.warning(f"Dropping event {event.id[:8]} with invalid id or signature")
            return
        if not sub.matches(event):
            logger.debug(f"Dropping event {event.id[:8]} not matching subscription {sub_id}")
            return
        sub.deliver(event)

    def _fail(self, error: RelayError) -> None:
        if self._failure is not None:
            return
        self._failure = error
        for sub in self._subscriptions.values():
            sub.fail(error)
        for future in self._pending_oks.values():
            if not future.done():
                future.set_exception(error)


class WebSocketRelay(RelayClient):
    def __init__(
        self,
        url: str,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
    ):
        super().__init__(url, ack_timeout=ack_timeout)
        self.connect_timeout = connect_timeout
        self._ws: Any = None
        self._reader_task: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        if self._ws is not None:
            return
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.url, max_size=2**22), timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise RelayError(f"Cannot connect to relay {self.url}: {e}") from e
        logger.debug(f"Connected to relay {self.url}")
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self.handle_message(raw)
            self._fail(RelayError(f"Relay {self.url} closed the connection"))
        except websockets.exceptions.ConnectionClosed as e:
            self._fail(RelayError(f"Relay {self.url} connection lost: {e}"))

    async def _send(self, frame: list[Any]) -> None:
        self._check()
        if self._ws is None:
            raise RelayError("Relay not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed as e:
            self._fail(RelayError(f"Relay {self.url} connection lost: {e}"))
            raise RelayError(f"Failed to send to {self.url}: {e}") from e

    async def close(self) -> None:
        await super().close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
