"""Background publisher advertising this node's neighbors and message hashes."""

from __future__ import annotations

import asyncio
import logging
import random

from .content import GossipRecordContent
from .timeslot import unix_minute

log = logging.getLogger(__name__)

MAX_INTERVAL = 50
"""Publications are spaced a random 0 to 49 seconds apart."""


class Publisher:
    """Periodically publishes a record with active peers and message hashes.

    The record content holds exactly five peers and five hashes; a round in
    which the node has a different number of either fails and is retried
    on the next tick.
    """

    def __init__(self, record_publisher, gossip_receiver, *, start: bool = True) -> None:
        self._record_publisher = record_publisher
        self._gossip_receiver = gossip_receiver
        self._task = asyncio.get_running_loop().create_task(self._run()) if start else None

    def __repr__(self) -> str:
        running = self._task is not None and not self._task.done()
        return f"Publisher(running={running})"

    async def _run(self) -> None:
        log.debug("Publisher: starting")
        while True:
            try:
                await self.publish()
            except Exception as exc:  # a failed round is retried on the next tick
                log.debug("Publisher: failed to publish record: %r", exc)
            delay = random.randrange(MAX_INTERVAL)
            log.debug("Publisher: next publish in %ds", delay)
            await asyncio.sleep(delay)

    async def publish(self):
        """Build, sign and publish one record for the current minute; return it."""
        minute = unix_minute(0)
        active_peers = [
            peer for peer in map(bytes, await self._gossip_receiver.neighbors()) if len(peer) == 32
        ]
        message_hashes = [
            digest
            for digest in map(bytes, await self._gossip_receiver.last_message_hashes())
            if len(digest) == 32
        ]
        log.debug(
            "Publisher: unix_minute %d, %d active peers, %d message hashes",
            minute,
            len(active_peers),
            len(message_hashes),
        )
        content = GossipRecordContent(tuple(active_peers), tuple(message_hashes))
        record = self._record_publisher.new_record(minute, content)
        await self._record_publisher.publish_record(record)
        log.debug("Publisher: published record")
        return record

    def close(self) -> None:
        """Stop publishing."""
        if self._task is not None:
            self._task.cancel()