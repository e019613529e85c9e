"""Receiving side of a gossip topic: queued events and recent message hashes."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import deque
from dataclasses import dataclass
from typing import Union

log = logging.getLogger(__name__)

MAX_BACKLOG = 1000
"""Queued events tolerated with nobody waiting before the receiver stops pumping."""


@dataclass(frozen=True)
class Received:
    """A message delivered on the topic."""

    content: bytes
    delivered_from: bytes = b""


@dataclass(frozen=True)
class NeighborUp:
    """A direct neighbor connected."""

    node_id: bytes


@dataclass(frozen=True)
class NeighborDown:
    """A direct neighbor disconnected."""

    node_id: bytes


@dataclass(frozen=True)
class Lagged:
    """The event stream fell behind and dropped events."""


Event = Union[Received, NeighborUp, NeighborDown, Lagged]


def _message_hash(content: bytes) -> bytes:
    return hashlib.sha512(bytes(content)).digest()[:32]


class GossipReceiver:
    """Collects events from a topic stream and hands them out in arrival order.

    ``gossip_receiver`` is an async iterable of events that also offers
    ``neighbors()`` and ``is_joined()``. An exception raised by the stream
    is passed to the oldest caller waiting in :meth:`next`; afterwards, and
    once the stream has ended and queued events are consumed, :meth:`next`
    returns ``None``.
    """

    def __init__(self, gossip_receiver, gossip=None, *, max_backlog: int = MAX_BACKLOG) -> None:
        self._source = gossip_receiver
        self._gossip = gossip
        self._max_backlog = max_backlog
        self._queue: deque = deque()
        self._waiters: deque = deque()
        self._hashes: list[bytes] = []
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._pump())

    def __repr__(self) -> str:
        return f"GossipReceiver(queued={len(self._queue)}, closed={self._closed})"

    async def _pump(self) -> None:
        log.debug("starting gossip receiver")
        try:
            async for event in self._source:
                if not self._live_waiters() and len(self._queue) > self._max_backlog:
                    log.warning(
                        "event queue at %d with no waiters, stopping receiver", len(self._queue)
                    )
                    break
                self._record(event)
                self._deliver(event)
            else:
                log.debug("gossip stream ended")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("gossip stream error: %r", exc)
            waiter = self._pop_waiter()
            if waiter is not None:
                waiter.set_exception(exc)
        finally:
            self._shutdown()

    def _live_waiters(self) -> bool:
        return any(not waiter.done() for waiter in self._waiters)

    def _pop_waiter(self):
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                return waiter
        return None

    def _deliver(self, event) -> None:
        waiter = self._pop_waiter()
        if waiter is not None:
            waiter.set_result(event)
        else:
            self._queue.append(event)

    def _record(self, event) -> None:
        if isinstance(event, Received):
            log.debug("received message from %r", event.delivered_from)
            self._hashes.append(_message_hash(event.content))
        elif isinstance(event, NeighborUp):
            log.debug("neighbor up: %r", event.node_id)
        elif isinstance(event, NeighborDown):
            log.debug("neighbor down: %r", event.node_id)
        elif isinstance(event, Lagged):
            log.debug("event stream lagged")

    def _shutdown(self) -> None:
        self._closed = True
        while True:
            waiter = self._pop_waiter()
            if waiter is None:
                break
            waiter.set_result(None)

    async def neighbors(self) -> set:
        """Node ids of the currently connected neighbors."""
        return set(self._source.neighbors())

    async def is_joined(self) -> bool:
        """Whether the local node has at least one neighbor on the topic."""
        return bool(self._source.is_joined())

    async def next(self):
        """Return the next event, or ``None`` once the receiver is closed."""
        if self._queue:
            return self._queue.popleft()
        if self._closed:
            return None
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return await waiter

    async def last_message_hashes(self) -> list[bytes]:
        """First 32 bytes of SHA-512 of every message received so far."""
        return list(self._hashes)

    def close(self) -> None:
        """Stop receiving; waiting and later calls to :meth:`next` get ``None``."""
        self._task.cancel()
        self._queue.clear()
        self._shutdown()

    def __aiter__(self):
        return self

    async def __anext__(self):
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event