import asyncio

import pytest
from nacl.signing import SigningKey

from topictracker.content import GossipRecordContent
from topictracker.merge import MAX_JOIN_PEERS_COUNT, BubbleMerge, MessageOverlapMerge
from topictracker.record import Record
from topictracker.timeslot import unix_minute

TOPIC = bytes([1]) * 32
ZERO = bytes(32)
SMALL_ORDER = b"\x01" + bytes(31)


def node_id() -> bytes:
    return bytes(SigningKey.generate().verify_key)


def make_record(signing_key, active_peers=(), hashes=()):
    peers = tuple(active_peers) + (ZERO,) * (5 - len(active_peers))
    digests = tuple(hashes) + (ZERO,) * (5 - len(hashes))
    content = GossipRecordContent(peers, digests)
    return Record.sign(TOPIC, 12345, bytes(signing_key.verify_key), content, signing_key)


class FakeRecordPublisher:
    def __init__(self, records, pub_key):
        self.records = set(records)
        self.pub_key = pub_key
        self.minutes = []

    async def get_records(self, minute):
        self.minutes.append(minute)
        return set(self.records)


class FakeReceiver:
    def __init__(self, neighbors=(), hashes=()):
        self._neighbors = set(neighbors)
        self._hashes = list(hashes)

    async def neighbors(self):
        return set(self._neighbors)

    async def last_message_hashes(self):
        return list(self._hashes)


class FakeSender:
    def __init__(self):
        self.calls = []
        self.joined = asyncio.Event()

    async def join_peers(self, peers, max_peers=None):
        self.calls.append((list(peers), max_peers))
        self.joined.set()


@pytest.mark.asyncio
async def test_bubble_merge_joins_advertised_peers():
    own = SigningKey.generate()
    remote = SigningKey.generate()
    neighbor = node_id()
    wanted = node_id()
    remote_id = bytes(remote.verify_key)
    record = make_record(
        remote,
        active_peers=(wanted, neighbor, bytes(own.verify_key), remote_id, SMALL_ORDER),
    )
    sender = FakeSender()
    merge = BubbleMerge(
        FakeRecordPublisher([record], own.verify_key),
        sender,
        FakeReceiver(neighbors=[neighbor]),
        start=False,
    )
    joined = await merge.merge()
    assert joined == {wanted, remote_id}
    assert len(sender.calls) == 1
    peers, max_peers = sender.calls[0]
    assert set(peers) == {wanted, remote_id}
    assert max_peers == MAX_JOIN_PEERS_COUNT == 30


@pytest.mark.asyncio
async def test_bubble_merge_fetches_previous_and_current_minute():
    own = SigningKey.generate()
    publisher = FakeRecordPublisher([make_record(SigningKey.generate())], own.verify_key)
    before = unix_minute(0)
    merge = BubbleMerge(publisher, FakeSender(), FakeReceiver(), start=False)
    await merge.merge()
    after = unix_minute(0)
    assert len(publisher.minutes) == 2
    assert publisher.minutes[1] == publisher.minutes[0] + 1
    assert before <= publisher.minutes[1] <= after


@pytest.mark.asyncio
async def test_bubble_merge_skips_without_records():
    sender = FakeSender()
    merge = BubbleMerge(
        FakeRecordPublisher([], SigningKey.generate().verify_key), sender, FakeReceiver(), start=False
    )
    assert await merge.merge() == set()
    assert sender.calls == []


@pytest.mark.asyncio
async def test_bubble_merge_skips_when_cluster_is_large():
    sender = FakeSender()
    record = make_record(SigningKey.generate(), active_peers=(node_id(),))
    merge = BubbleMerge(
        FakeRecordPublisher([record], SigningKey.generate().verify_key),
        sender,
        FakeReceiver(neighbors=[node_id() for _ in range(4)]),
        start=False,
    )
    assert await merge.merge() == set()
    assert sender.calls == []


@pytest.mark.asyncio
async def test_bubble_merge_ignores_own_record():
    own = SigningKey.generate()
    sender = FakeSender()
    merge = BubbleMerge(
        FakeRecordPublisher([make_record(own)], own.verify_key), sender, FakeReceiver(), start=False
    )
    assert await merge.merge() == set()
    assert sender.calls == []


@pytest.mark.asyncio
async def test_bubble_merge_runs_in_background_until_closed():
    remote = SigningKey.generate()
    sender = FakeSender()
    merge = BubbleMerge(
        FakeRecordPublisher([make_record(remote)], SigningKey.generate().verify_key),
        sender,
        FakeReceiver(),
    )
    try:
        await asyncio.wait_for(sender.joined.wait(), 2)
    finally:
        merge.close()
    assert sender.calls[0][0] == [bytes(remote.verify_key)]


@pytest.mark.asyncio
async def test_overlap_merge_joins_records_sharing_hashes():
    shared = bytes([7]) * 32
    remote = SigningKey.generate()
    peer = node_id()
    overlapping = make_record(remote, active_peers=(peer, SMALL_ORDER), hashes=(shared,))
    unrelated = make_record(SigningKey.generate(), active_peers=(node_id(),), hashes=(bytes([9]) * 32,))
    sender = FakeSender()
    merge = MessageOverlapMerge(
        FakeRecordPublisher([overlapping, unrelated], SigningKey.generate().verify_key),
        sender,
        FakeReceiver(hashes=[shared]),
        start=False,
    )
    joined = await merge.merge()
    assert joined == {bytes(remote.verify_key), peer}
    assert set(sender.calls[0][0]) == joined
    assert sender.calls[0][1] == MAX_JOIN_PEERS_COUNT


@pytest.mark.asyncio
async def test_overlap_merge_skips_without_local_hashes():
    sender = FakeSender()
    record = make_record(SigningKey.generate(), hashes=(bytes([7]) * 32,))
    merge = MessageOverlapMerge(
        FakeRecordPublisher([record], SigningKey.generate().verify_key),
        sender,
        FakeReceiver(),
        start=False,
    )
    assert await merge.merge() == set()
    assert sender.calls == []


@pytest.mark.asyncio
async def test_overlap_merge_ignores_zero_hashes():
    sender = FakeSender()
    record = make_record(SigningKey.generate())
    merge = MessageOverlapMerge(
        FakeRecordPublisher([record], SigningKey.generate().verify_key),
        sender,
        FakeReceiver(hashes=[ZERO]),
        start=False,
    )
    assert await merge.merge() == set()
    assert sender.calls == []


@pytest.mark.asyncio
async def test_overlap_merge_propagates_join_failure():
    shared = bytes([5]) * 32

    class FailingSender(FakeSender):
        async def join_peers(self, peers, max_peers=None):
            raise RuntimeError("join failed")

    merge = MessageOverlapMerge(
        FakeRecordPublisher(
            [make_record(SigningKey.generate(), hashes=(shared,))], SigningKey.generate().verify_key
        ),
        FailingSender(),
        FakeReceiver(hashes=[shared]),
        start=False,
    )
    with pytest.raises(RuntimeError, match="join failed"):
        await merge.merge()