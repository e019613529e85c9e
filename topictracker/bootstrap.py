"""Bootstrap: discover peers for a topic through DHT records and join them."""

from __future__ import annotations

import asyncio
import logging

from nacl.bindings import crypto_core_ed25519_is_valid_point

from .content import GossipRecordContent
from .receiver import GossipReceiver
from .record import Record
from .sender import GossipSender
from .timeslot import unix_minute

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
"""Pause between bootstrap rounds."""

JOIN_SETTLE = 0.1
"""Pause after each single-peer join before checking whether it worked."""

FINAL_WAIT = 0.5
"""Grace period for pending connections before a round is given up."""

_ZERO = bytes(32)


def _endpoint_id(raw) -> bytes | None:
    raw = bytes(raw)
    if len(raw) != 32:
        return None
    return raw if crypto_core_ed25519_is_valid_point(raw) else None


def _bootstrap_nodes(records) -> set[bytes]:
    """Publisher ids and advertised active peers that are valid node ids."""
    nodes: set[bytes] = set()
    for record in records:
        candidates = [record.node_id]
        try:
            content = record.content(GossipRecordContent)
        except ValueError:
            content = None
        if content is not None:
            candidates.extend(peer for peer in content.active_peers if peer != _ZERO)
        nodes.update(node for node in map(_endpoint_id, candidates) if node is not None)
    return nodes


class Bootstrap:
    """Finds peers of a topic through DHT records and joins them one at a time.

    ``gossip`` offers an async ``subscribe(topic_id, peers)`` returning a
    topic whose ``split()`` yields the raw sender and receiver.
    """

    def __init__(self, record_publisher, gossip_sender: GossipSender, gossip_receiver: GossipReceiver) -> None:
        self._record_publisher = record_publisher
        self._sender = gossip_sender
        self._receiver = gossip_receiver
        self._tasks: set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"Bootstrap(running_tasks={len(self._tasks)})"

    @classmethod
    async def create(cls, record_publisher, gossip) -> Bootstrap:
        """Subscribe to the publisher's topic and wrap its sender and receiver."""
        gossip_topic = await gossip.subscribe(record_publisher.record_topic.hash(), [])
        raw_sender, raw_receiver = gossip_topic.split()
        return cls(
            record_publisher,
            GossipSender(raw_sender, gossip),
            GossipReceiver(raw_receiver, gossip),
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def bootstrap(self) -> asyncio.Future:
        """Start bootstrapping; the returned future resolves once the node has joined."""
        done = asyncio.get_running_loop().create_future()
        self._spawn(self._run(done))
        return done

    async def gossip_sender(self) -> GossipSender:
        return self._sender

    async def gossip_receiver(self) -> GossipReceiver:
        return self._receiver

    def close(self) -> None:
        """Stop bootstrapping and close the topic's sender and receiver."""
        for task in list(self._tasks):
            task.cancel()
        self._sender.close()
        self._receiver.close()

    async def _run(self, done: asyncio.Future) -> None:
        try:
            await self._join_loop()
        except asyncio.CancelledError:
            if not done.done():
                done.cancel()
            raise
        except Exception as exc:
            log.debug("Bootstrap: failed: %r", exc)
            if not done.done():
                done.set_exception(exc)
            return
        log.debug("Bootstrap: completed successfully")
        if not done.done():
            done.set_result(None)

    def _publish_own(self, minute: int) -> None:
        rp = self._record_publisher
        try:
            record = Record.sign(
                rp.record_topic.hash(),
                minute,
                bytes(rp.pub_key),
                GossipRecordContent.empty(),
                rp.signing_key,
            )
        except (ValueError, TypeError) as exc:
            log.debug("Bootstrap: could not sign own record: %r", exc)
            return
        self._spawn(self._publish_quietly(record))

    async def _publish_quietly(self, record: Record) -> None:
        try:
            await self._record_publisher.publish_record(record)
        except Exception as exc:  # publishing is best effort
            log.debug("Bootstrap: publishing own record failed: %r", exc)

    async def _join_loop(self) -> None:
        receiver, sender = self._receiver, self._sender
        last_published = 0
        log.debug("Bootstrap: starting bootstrap process")
        while True:
            if await receiver.is_joined():
                log.debug("Bootstrap: already joined")
                return

            # The first round looks at the previous minute, later rounds at the current one.
            minute = unix_minute(-1 if last_published == 0 else 0)
            records = set(await self._record_publisher.get_records(minute - 1))
            records.update(await self._record_publisher.get_records(minute))
            log.debug("Bootstrap: fetched %d records for unix_minute %d", len(records), minute)

            if not records:
                if minute != last_published:
                    log.debug("Bootstrap: no records, publishing own for unix_minute %d", minute)
                    last_published = minute
                    self._publish_own(minute)
                await asyncio.sleep(POLL_INTERVAL)
                continue

            nodes = _bootstrap_nodes(records)
            log.debug("Bootstrap: extracted %d potential bootstrap nodes", len(nodes))

            # Someone may have connected through one of our records meanwhile.
            if await receiver.is_joined():
                log.debug("Bootstrap: joined while processing records")
                return

            # Join one peer at a time to disturb existing neighborhoods as little as possible.
            for node in nodes:
                try:
                    await sender.join_peers([node], None)
                except Exception as exc:
                    log.debug("Bootstrap: failed to join peer %s: %r", node.hex(), exc)
                    continue
                await asyncio.sleep(JOIN_SETTLE)
                if await receiver.is_joined():
                    log.debug("Bootstrap: joined via peer %s", node.hex())
                    break

            if not await receiver.is_joined():
                await asyncio.sleep(FINAL_WAIT)
            if await receiver.is_joined():
                return

            log.debug("Bootstrap: still not joined after attempting all peers")
            if minute != last_published:
                log.debug("Bootstrap: publishing fallback record for unix_minute %d", minute)
                last_published = minute
                self._publish_own(minute)
            await asyncio.sleep(POLL_INTERVAL)