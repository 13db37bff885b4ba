"""Fan-out of events to every connected listener.

Each listener gets its own bounded queue. Publishing never waits: a listener
whose queue is full, or that has been closed, is evicted on the spot so a
slow or dead client cannot stall the others.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from agent_bridge.models import Event

logger = logging.getLogger(__name__)


class ListenerClosedError(Exception):
    """Raised by ``push`` on a listener that no longer accepts events."""


class Listener(Protocol):
    """Anything that can receive a pushed event. ``push`` may raise to signal failure."""

    def push(self, event: Event) -> None: ...


class Subscription:
    """A listener backed by a bounded asyncio queue, consumed by one event stream."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def push(self, event: Event) -> None:
        if self._closed.is_set():
            raise ListenerClosedError("subscription closed")
        # QueueFull propagates to the broadcaster, which evicts us.
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> Event | None:
        """Next queued event, or ``None`` on timeout or once closed and drained."""
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._closed.is_set():
            return None

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, closer}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter in done and not getter.cancelled():
            return getter.result()
        return None

    def close(self) -> None:
        self._closed.set()


class EventBroadcaster:
    """Publishes events to all live listeners, evicting the ones that fail."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._listeners: list[Listener] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def is_subscribed(self, listener: Listener) -> bool:
        return any(existing is listener for existing in self._listeners)

    def subscribe(self) -> Subscription:
        """Register a new queue-backed listener."""
        subscription = Subscription(maxsize=self._queue_size)
        self.attach(subscription)
        return subscription

    def attach(self, listener: Listener) -> None:
        """Register an arbitrary listener (e.g. the terminal display)."""
        self._listeners.append(listener)
        logger.debug("Listener attached, %d active", len(self._listeners))

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a listener. Unknown listeners are ignored."""
        self._listeners = [existing for existing in self._listeners if existing is not listener]
        if isinstance(listener, Subscription):
            listener.close()
        logger.debug("Listener removed, %d active", len(self._listeners))

    def publish(self, event: Event) -> int:
        """Push ``event`` to every listener. Returns how many accepted it."""
        delivered = 0
        failed: list[Listener] = []
        for listener in list(self._listeners):
            try:
                listener.push(event)
                delivered += 1
            except Exception as exc:
                failed.append(listener)
                logger.warning(
                    "Evicting listener %r after failed push of %s: %s",
                    listener,
                    event.type.value,
                    exc.__class__.__name__,
                )
        for listener in failed:
            self.unsubscribe(listener)
        return delivered

    def close(self) -> None:
        """Close and drop every listener."""
        for listener in list(self._listeners):
            self.unsubscribe(listener)
