import pytest
from nacl.signing import SigningKey

from topictracker.content import GossipRecordContent
from topictracker.dht import Dht, DhtError
from topictracker.record import (
    EncryptedRecord,
    Record,
    RecordContent,
    RecordError,
    RecordPublisher,
    RecordTopic,
)

TOPIC = bytes([1]) * 32
MINUTE = 12345


def _content():
    return GossipRecordContent((bytes([3]) * 32,) * 5, (bytes([4]) * 32,) * 5)


def _signed(signing_key, node_id=None):
    node_id = bytes(signing_key.verify_key) if node_id is None else node_id
    return Record.sign(TOPIC, MINUTE, node_id, _content(), signing_key)


class MemoryBackend:
    """In-memory stand-in for the network, shared between clients."""

    def __init__(self, store, preload=None, fail=False):
        self.store = store
        self.preload = preload or []
        self.fail = fail
        self.puts = 0

    async def start(self):
        return None

    def close(self):
        return None

    async def get_mutable(self, public_key, salt, more_recent_than):
        if self.fail:
            raise DhtError("unreachable")
        items = list(self.preload)
        item = self.store.get((public_key, salt))
        if item is not None:
            items.append(item)
        return items

    async def get_mutable_most_recent(self, public_key, salt):
        return self.store.get((public_key, salt))

    async def put_mutable(self, item, cas=None):
        self.puts += 1
        self.store[(item.key, item.salt)] = item


def _publisher(backend, initial_secret=b"secret", topic="test-topic"):
    key = SigningKey.generate()
    return RecordPublisher(
        RecordTopic.from_str(topic),
        key.verify_key,
        key,
        None,
        initial_secret,
        dht=Dht(lambda: backend),
    )


def test_record_serialization_roundtrip():
    signing_key = SigningKey.generate()
    record = _signed(signing_key, node_id=bytes([2]) * 32)
    decoded = Record.from_bytes(record.to_bytes())
    content = decoded.content(GossipRecordContent)
    assert decoded.topic == record.topic
    assert decoded.unix_minute == record.unix_minute
    assert decoded.node_id == record.node_id
    assert content.active_peers == _content().active_peers
    assert content.last_message_hashes == _content().last_message_hashes
    assert decoded.signature == record.signature
    assert decoded == record


def test_record_byte_layout():
    data = _signed(SigningKey.generate()).to_bytes()
    assert len(data) == 32 + 8 + 32 + 320 + 64
    assert data[:32] == TOPIC
    assert data[32:40] == MINUTE.to_bytes(8, "little")


def test_record_verification():
    record = _signed(SigningKey.generate())
    record.verify(TOPIC, MINUTE)
    with pytest.raises(RecordError, match="topic"):
        record.verify(bytes([99]) * 32, MINUTE)
    with pytest.raises(RecordError, match="minute"):
        record.verify(TOPIC, MINUTE + 1)


def test_tampered_signature_fails_verification():
    record = _signed(SigningKey.generate())
    data = bytearray(record.to_bytes())
    data[-1] ^= 0xFF
    with pytest.raises(RecordError):
        Record.from_bytes(bytes(data)).verify(TOPIC, MINUTE)


def test_record_from_short_bytes_raises():
    with pytest.raises(RecordError):
        Record.from_bytes(bytes(100))


def test_encrypted_record_roundtrip():
    signing_key = SigningKey.generate()
    encryption_key = SigningKey.generate()
    record = _signed(signing_key)
    decrypted = record.encrypt(encryption_key).decrypt(encryption_key)
    content = decrypted.content(GossipRecordContent)
    assert decrypted.topic == record.topic
    assert decrypted.unix_minute == record.unix_minute
    assert decrypted.node_id == record.node_id
    assert content.active_peers == _content().active_peers
    assert content.last_message_hashes == _content().last_message_hashes
    assert decrypted.signature == record.signature


def test_encrypted_record_serialization():
    encryption_key = SigningKey.generate()
    record = _signed(SigningKey.generate())
    encrypted = record.encrypt(encryption_key)
    data = encrypted.to_bytes()
    assert int.from_bytes(data[:4], "little") == len(encrypted.encrypted_record)
    decrypted = EncryptedRecord.from_bytes(data).decrypt(encryption_key)
    assert decrypted.topic == record.topic
    assert decrypted.unix_minute == record.unix_minute


def test_decrypt_with_wrong_key_raises():
    encrypted = _signed(SigningKey.generate()).encrypt(SigningKey.generate())
    with pytest.raises(RecordError):
        encrypted.decrypt(SigningKey.generate())


def test_encrypted_record_bad_length_raises():
    with pytest.raises(RecordError):
        EncryptedRecord.from_bytes(b"\x01\x00")
    with pytest.raises(RecordError):
        EncryptedRecord.from_bytes((50).to_bytes(4, "little") + bytes(10))


def test_record_topic_from_str():
    topic = RecordTopic.from_str("test-topic")
    assert topic == RecordTopic.from_str("test-topic")
    assert topic.hash() != RecordTopic.from_str("different-topic").hash()
    assert len(topic.hash()) == 32
    assert RecordTopic.from_bytes(topic.hash()) == topic


def test_record_topic_wrong_length_raises():
    with pytest.raises(ValueError):
        RecordTopic.from_bytes(bytes(31))


def test_record_content_roundtrip():
    content = RecordContent.from_arbitrary(_content())
    assert len(content.data) == 320
    assert content.to(GossipRecordContent) == _content()


def test_record_content_rejects_unserializable():
    with pytest.raises(TypeError):
        RecordContent.from_arbitrary(3.5)


def test_new_record_uses_publisher_identity():
    publisher = _publisher(MemoryBackend({}))
    record = publisher.new_record(MINUTE, _content())
    assert record.node_id == bytes(publisher.pub_key)
    assert record.topic == publisher.record_topic.hash()
    record.verify(publisher.record_topic.hash(), MINUTE)


@pytest.mark.asyncio
async def test_publish_and_fetch_between_peers():
    store = {}
    alice = _publisher(MemoryBackend(store))
    bob = _publisher(MemoryBackend(store))
    record = alice.new_record(MINUTE, _content())
    await alice.publish_record(record)
    assert await bob.get_records(MINUTE) == {record}
    assert await alice.get_records(MINUTE) == set()
    assert await bob.get_records(MINUTE + 1) == set()


@pytest.mark.asyncio
async def test_other_secret_cannot_read_records():
    store = {}
    alice = _publisher(MemoryBackend(store), initial_secret=b"secret")
    eve = _publisher(MemoryBackend(store), initial_secret=b"placeholder")
    await alice.publish_record(alice.new_record(MINUTE, _content()))
    assert await eve.get_records(MINUTE) == set()


@pytest.mark.asyncio
async def test_get_records_on_failing_dht_is_empty():
    publisher = _publisher(MemoryBackend({}, fail=True))
    assert await publisher.get_records(MINUTE) == set()


def _preloaded_items(reader, count):
    from topictracker.keys import encryption_keypair, salt, signing_keypair
    from topictracker.dht import MutableItem

    topic = reader.record_topic
    enc_key = encryption_keypair(topic, None, reader.initial_secret_hash, MINUTE)
    sign_key = signing_keypair(topic, MINUTE)
    items = []
    for seq in range(count):
        node_key = SigningKey.generate()
        record = Record.sign(topic.hash(), MINUTE, bytes(node_key.verify_key), _content(), node_key)
        value = record.encrypt(enc_key).to_bytes()
        items.append(MutableItem.sign(sign_key, value, seq, salt(topic, MINUTE)))
    return items


@pytest.mark.asyncio
@pytest.mark.parametrize("existing, expected_puts", [(100, 0), (99, 1)])
async def test_publish_respects_record_limit(existing, expected_puts):
    backend = MemoryBackend({})
    publisher = _publisher(backend)
    backend.preload = _preloaded_items(publisher, existing)
    assert len(await publisher.get_records(MINUTE)) == existing
    await publisher.publish_record(publisher.new_record(MINUTE, _content()))
    assert backend.puts == expected_puts