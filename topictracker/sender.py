"""Sending side of a gossip topic: serialised broadcasts and peer joins."""

from __future__ import annotations

import asyncio
import logging
import random

log = logging.getLogger(__name__)

OPERATION_TIMEOUT = 10.0


class GossipError(Exception):
    """Raised when a gossip send or join fails or times out."""


def _select(peers, max_peers):
    peers = list(peers)
    if max_peers is not None:
        random.shuffle(peers)
        del peers[max_peers:]
    return peers


class GossipSender:
    """Broadcasts to a topic and joins peers.

    ``gossip_sender`` offers async ``broadcast``, ``broadcast_neighbors`` and
    ``join_peers``. Broadcasts and :meth:`join_peers` run one at a time;
    :meth:`join_peers_direct` skips that queue.
    """

    def __init__(self, gossip_sender, gossip=None, *, timeout: float = OPERATION_TIMEOUT) -> None:
        self._sender = gossip_sender
        self._gossip = gossip
        self._timeout = timeout
        self._lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f"GossipSender(closed={self._closed})"

    def _check_open(self) -> None:
        if self._closed:
            raise GossipError("sender closed")

    async def _run(self, name: str, call) -> None:
        try:
            await asyncio.wait_for(call, self._timeout)
        except asyncio.TimeoutError as exc:
            log.warning("%s timed out", name)
            raise GossipError(f"{name} timed out") from exc
        except GossipError:
            raise
        except Exception as exc:
            raise GossipError(f"{name} failed: {exc}") from exc

    async def _queued(self, name: str, make_call) -> None:
        self._check_open()
        async with self._lock:
            self._check_open()
            await self._run(name, make_call())

    async def broadcast(self, data: bytes) -> None:
        """Broadcast ``data`` to every peer on the topic."""
        data = bytes(data)
        log.debug("broadcasting message (%d bytes)", len(data))
        await self._queued("broadcast", lambda: self._sender.broadcast(data))

    async def broadcast_neighbors(self, data: bytes) -> None:
        """Broadcast ``data`` to direct neighbors only."""
        data = bytes(data)
        log.debug("broadcasting to neighbors (%d bytes)", len(data))
        await self._queued("broadcast_neighbors", lambda: self._sender.broadcast_neighbors(data))

    async def join_peers_direct(self, peers, max_peers=None) -> None:
        """Join peers without waiting behind queued broadcasts."""
        self._check_open()
        selected = _select(peers, max_peers)
        log.debug("joining %d peers (direct)", len(selected))
        await self._run("join_peers", self._sender.join_peers(selected))

    async def join_peers(self, peers, max_peers=None) -> None:
        """Join peers, at most ``max_peers`` of them chosen at random."""
        selected = _select(peers, max_peers)
        log.debug("joining %d peers", len(selected))
        await self._queued("join_peers", lambda: self._sender.join_peers(selected))

    def close(self) -> None:
        """Refuse further operations."""
        self._closed = True