"""Live-reload broadcast channel and server-sent-event client subscriptions.

`ReloadChannel` is a synchronous in-process publish/subscribe bus. Each open
`/<reload_path>` event stream owns one `ClientSubscription`, which queues the
frames for its connection and merges them with the frames esbuild's own
event stream produces.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import AsyncIterator, Callable

from elx.cli.dev.logging import DevLogComponent, get_logger
from elx.models import AssetUpdated, ReloadEvent

logger = get_logger(DevLogComponent.RELOAD)

ReloadCallback = Callable[[ReloadEvent], None]

_FRAME_SEPARATOR = b"\n\n"


def encode_frame(event: ReloadEvent) -> bytes:
    """Encode an event in the format esbuild's live-reload client expects."""
    if isinstance(event, AssetUpdated):
        data = json.dumps({"added": [], "removed": [], "updated": [event.path]})
        return f"event: change\ndata: {data}\n\n".encode()
    return b"event: reload\ndata: reload\n\n"


class Subscription:
    """Handle returned by `ReloadChannel.subscribe`."""

    __slots__ = ("id", "callback")

    def __init__(self, id: int, callback: ReloadCallback) -> None:
        self.id: int = id
        self.callback: ReloadCallback = callback

    def __repr__(self) -> str:
        return f"Subscription(id={self.id})"


class ReloadChannel:
    """Turns rebuild completions into notifications for every subscriber."""

    def __init__(self) -> None:
        self._subscribers: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, callback: ReloadCallback) -> Subscription:
        subscription = Subscription(next(self._ids), callback)
        self._subscribers[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber; removing twice is a no-op."""
        self._subscribers.pop(subscription.id, None)

    def publish(self, event: ReloadEvent) -> int:
        """Deliver `event` to every current subscriber, in subscription order.

        Returns the number of subscribers the event was delivered to.
        """
        # Callbacks may unsubscribe while we iterate.
        delivered = 0
        for subscription in list(self._subscribers.values()):
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Reload subscriber {subscription.id} failed: {e}")
        logger.debug(f"Published {event.kind} to {delivered} client(s)")
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class ClientSubscription:
    """One open live-reload event stream.

    Frames from the channel and from the upstream stream are queued in
    arrival order. Upstream bytes are only forwarded on frame boundaries so a
    broadcast frame never lands in the middle of an upstream frame.
    """

    def __init__(self, channel: ReloadChannel) -> None:
        self._channel: ReloadChannel = channel
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._pending: bytes = b""
        self._closed: bool = False
        self._subscription: Subscription = channel.subscribe(self._on_event)

    def _on_event(self, event: ReloadEvent) -> None:
        self._queue.put_nowait(encode_frame(event))

    def feed(self, chunk: bytes) -> None:
        """Queue bytes received from the upstream event stream."""
        self._pending += chunk
        end = self._pending.rfind(_FRAME_SEPARATOR)
        if end == -1:
            return
        end += len(_FRAME_SEPARATOR)
        self._queue.put_nowait(self._pending[:end])
        self._pending = self._pending[end:]

    def finish(self) -> None:
        """Mark the upstream stream as ended."""
        if self._pending:
            self._queue.put_nowait(self._pending)
            self._pending = b""
        self._queue.put_nowait(None)

    def pending_frames(self) -> list[bytes]:
        """Drain and return the frames queued so far (without waiting)."""
        frames: list[bytes] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                frames.append(item)
        return frames

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.frames()

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield queued frames until the upstream stream ends."""
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    def close(self) -> None:
        """Stop receiving broadcasts. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._channel.unsubscribe(self._subscription)

    @property
    def closed(self) -> bool:
        return self._closed

