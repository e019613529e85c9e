"""Peer merging strategies that heal partitioned topic clusters.

Two complementary strategies run periodically:

* :class:`BubbleMerge` joins small clusters (fewer than four neighbors) with
  peers advertised in the DHT.
* :class:`MessageOverlapMerge` joins peers whose published message hashes
  overlap with messages seen locally, meaning both sides share history.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import random

from nacl.bindings import crypto_core_ed25519_is_valid_point

from .content import GossipRecordContent
from .timeslot import unix_minute

log = logging.getLogger(__name__)

MAX_JOIN_PEERS_COUNT = 30
"""Upper bound on peers handed to a single join request."""

BUBBLE_THRESHOLD = 4
"""A cluster with fewer neighbors than this is treated as a bubble."""

MAX_INTERVAL = 50
"""Checks are spaced a random 0 to 49 seconds apart."""

_ZERO = bytes(32)


def _endpoint_id(raw) -> bytes | None:
    """Return ``raw`` as a node id if it is a usable Ed25519 public key."""
    raw = bytes(raw)
    if len(raw) != 32 or raw == _ZERO:
        return None
    return raw if crypto_core_ed25519_is_valid_point(raw) else None


def _decode_content(record) -> GossipRecordContent | None:
    try:
        return record.content(GossipRecordContent)
    except ValueError:
        return None


async def _recent_records(record_publisher) -> set:
    """Verified records of the previous and the current minute slot."""
    minute = unix_minute(0)
    records = set(await record_publisher.get_records(minute - 1))
    records.update(await record_publisher.get_records(minute))
    return records


class _PeriodicMerge(abc.ABC):
    _label = "merge"

    def __init__(self, record_publisher, gossip_sender, gossip_receiver, *, start: bool = True) -> None:
        self._record_publisher = record_publisher
        self._gossip_sender = gossip_sender
        self._gossip_receiver = gossip_receiver
        self._task = asyncio.get_running_loop().create_task(self._run()) if start else None

    def __repr__(self) -> str:
        running = self._task is not None and not self._task.done()
        return f"{type(self).__name__}(running={running})"

    async def _run(self) -> None:
        log.debug("%s: starting", self._label)
        while True:
            try:
                await self.merge()
            except Exception as exc:  # a failed round is retried on the next tick
                log.debug("%s: merge failed: %r", self._label, exc)
            delay = random.randrange(MAX_INTERVAL)
            log.debug("%s: next check in %ds", self._label, delay)
            await asyncio.sleep(delay)

    @abc.abstractmethod
    async def merge(self) -> set[bytes]:
        """Run one check; return the node ids a join was requested for."""

    def _stop(self) -> None:
        if self._task is not None:
            self._task.cancel()


class BubbleMerge(_PeriodicMerge):
    """Joins peers advertised in the DHT while the local cluster is small."""

    _label = "BubbleMerge"

    async def merge(self) -> set[bytes]:
        records = await _recent_records(self._record_publisher)
        neighbors = {bytes(n) for n in await self._gossip_receiver.neighbors()}
        log.debug("BubbleMerge: %d neighbors, %d records", len(neighbors), len(records))

        if len(neighbors) >= BUBBLE_THRESHOLD or not records:
            log.debug("BubbleMerge: no merge needed")
            return set()

        own_id = bytes(self._record_publisher.pub_key)
        candidates: set[bytes] = set()
        for record in records:
            content = _decode_content(record)
            if content is not None:
                for peer in content.active_peers:
                    if peer == _ZERO or peer in neighbors or peer == record.node_id or peer == own_id:
                        continue
                    endpoint = _endpoint_id(peer)
                    if endpoint is not None:
                        candidates.add(endpoint)
            publisher_id = _endpoint_id(record.node_id)
            if publisher_id is not None and publisher_id != own_id:
                candidates.add(publisher_id)

        log.debug("BubbleMerge: found %d potential peers", len(candidates))
        if candidates:
            await self._gossip_sender.join_peers(list(candidates), MAX_JOIN_PEERS_COUNT)
            log.debug("BubbleMerge: join_peers request sent")
        return candidates

    def close(self) -> None:
        """Stop the periodic checks."""
        self._stop()


class MessageOverlapMerge(_PeriodicMerge):
    """Joins peers whose recent message hashes overlap with local ones."""

    _label = "MessageOverlapMerge"

    async def merge(self) -> set[bytes]:
        records = await _recent_records(self._record_publisher)
        local_hashes = {bytes(h) for h in await self._gossip_receiver.last_message_hashes()}
        log.debug(
            "MessageOverlapMerge: %d records, %d local hashes", len(records), len(local_hashes)
        )
        if not local_hashes:
            log.debug("MessageOverlapMerge: no local message hashes yet")
            return set()

        overlapping = []
        for record in records:
            content = _decode_content(record)
            if content is None:
                continue
            if any(h != _ZERO and h in local_hashes for h in content.last_message_hashes):
                overlapping.append((record, content))

        log.debug("MessageOverlapMerge: %d records overlap", len(overlapping))
        if not overlapping:
            return set()

        node_ids: set[bytes] = set()
        for record, content in overlapping:
            publisher_id = _endpoint_id(record.node_id)
            if publisher_id is not None:
                node_ids.add(publisher_id)
            node_ids.update(
                endpoint
                for endpoint in map(_endpoint_id, content.active_peers)
                if endpoint is not None
            )

        await self._gossip_sender.join_peers(list(node_ids), MAX_JOIN_PEERS_COUNT)
        log.debug("MessageOverlapMerge: join_peers request sent for %d ids", len(node_ids))
        return node_ids

    def close(self) -> None:
        """Stop the periodic checks."""
        self._stop()