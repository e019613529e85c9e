"""Topic handle combining bootstrap, periodic publishing and peer merging."""

from __future__ import annotations

import hashlib
import logging

from .bootstrap import Bootstrap
from .merge import BubbleMerge, MessageOverlapMerge
from .publisher import Publisher
from .receiver import GossipReceiver
from .record import RecordTopic
from .sender import GossipSender

log = logging.getLogger(__name__)


class TopicId:
    """Topic identifier: the first 32 bytes of SHA-512 of its name."""

    def __init__(self, raw: str) -> None:
        self._raw = raw
        self._hash = hashlib.sha512(raw.encode()).digest()[:32]

    def __repr__(self) -> str:
        return f"TopicId({self._raw!r})"

    def hash(self) -> bytes:
        return self._hash

    def raw(self) -> str:
        return self._raw

    def record_topic(self) -> RecordTopic:
        return RecordTopic.from_bytes(self._hash)


class Topic:
    """A joined gossip topic with DHT discovery, publishing and merging."""

    def __init__(self, record_publisher, bootstrap: Bootstrap) -> None:
        self._record_publisher = record_publisher
        self._bootstrap = bootstrap
        self._publisher: Publisher | None = None
        self._bubble_merge: BubbleMerge | None = None
        self._message_overlap_merge: MessageOverlapMerge | None = None

    def __repr__(self) -> str:
        return f"Topic(record_publisher={self._record_publisher!r})"

    @classmethod
    async def create(cls, record_publisher, gossip, async_bootstrap: bool = False) -> Topic:
        """Subscribe and bootstrap; wait for the first neighbor unless ``async_bootstrap``."""
        log.debug("Topic: creating new topic (async_bootstrap=%s)", async_bootstrap)
        bootstrap = await Bootstrap.create(record_publisher, gossip)
        topic = cls(record_publisher, bootstrap)
        try:
            done = await bootstrap.bootstrap()
            if not async_bootstrap:
                log.debug("Topic: waiting for bootstrap to complete")
                await done
        except BaseException:
            bootstrap.close()
            raise
        await topic._start_background()
        log.debug("Topic: fully initialized")
        return topic

    async def _start_background(self) -> None:
        sender = await self._bootstrap.gossip_sender()
        receiver = await self._bootstrap.gossip_receiver()
        self._publisher = Publisher(self._record_publisher, receiver)
        self._bubble_merge = BubbleMerge(self._record_publisher, sender, receiver)
        self._message_overlap_merge = MessageOverlapMerge(self._record_publisher, sender, receiver)

    async def split(self) -> tuple[GossipSender, GossipReceiver]:
        return await self.gossip_sender(), await self.gossip_receiver()

    async def gossip_sender(self) -> GossipSender:
        return await self._bootstrap.gossip_sender()

    async def gossip_receiver(self) -> GossipReceiver:
        return await self._bootstrap.gossip_receiver()

    async def record_creator(self):
        """The record publisher used for this topic."""
        return self._record_publisher

    def close(self) -> None:
        """Stop all background work and close the sender and receiver."""
        for component in (self._publisher, self._bubble_merge, self._message_overlap_merge):
            if component is not None:
                component.close()
        self._bootstrap.close()


async def subscribe_and_join_with_auto_discovery(gossip, record_publisher) -> Topic:
    """Join a topic and wait until at least one neighbor is connected."""
    return await Topic.create(record_publisher, gossip, False)


async def subscribe_and_join_with_auto_discovery_no_wait(gossip, record_publisher) -> Topic:
    """Join a topic and return at once while bootstrapping continues in the background."""
    return await Topic.create(record_publisher, gossip, True)