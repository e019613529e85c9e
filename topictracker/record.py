"""Signed, encrypted discovery records and their publication in the DHT."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

from nacl.exceptions import CryptoError
from nacl.public import SealedBox
from nacl.signing import SigningKey, VerifyKey

from .dht import Dht
from .keys import RotationHandle, encryption_keypair, salt, signing_keypair
from .timeslot import MAX_BOOTSTRAP_RECORDS

log = logging.getLogger(__name__)

TOPIC_LEN = 32
MINUTE_LEN = 8
NODE_ID_LEN = 32
SIGNATURE_LEN = 64
_HEADER_LEN = TOPIC_LEN + MINUTE_LEN + NODE_ID_LEN
DHT_TIMEOUT = 10.0
PUT_RETRIES = 3


class RecordError(ValueError):
    """Raised when a record cannot be decoded, decrypted or verified."""


def _sha512_32(data: bytes) -> bytes:
    return hashlib.sha512(data).digest()[:32]


@dataclass(frozen=True)
class RecordTopic:
    """Topic identifier: the first 32 bytes of SHA-512 of its name."""

    digest: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "digest", bytes(self.digest))
        if len(self.digest) != 32:
            raise ValueError("topic hash must be 32 bytes")

    @classmethod
    def from_str(cls, text: str) -> RecordTopic:
        return cls(_sha512_32(text.encode()))

    @classmethod
    def from_bytes(cls, data: bytes) -> RecordTopic:
        return cls(bytes(data))

    def hash(self) -> bytes:
        return self.digest


def _as_record_topic(value) -> RecordTopic:
    if isinstance(value, RecordTopic):
        return value
    if isinstance(value, str):
        return RecordTopic.from_str(value)
    if isinstance(value, (bytes, bytearray)):
        return RecordTopic.from_bytes(value)
    if hasattr(value, "record_topic"):
        return value.record_topic()
    raise TypeError(f"cannot make a record topic from {type(value).__name__}")


@dataclass(frozen=True)
class RecordContent:
    """Serialized content carried inside a record."""

    data: bytes

    def to(self, content_type):
        """Decode the content with ``content_type.from_bytes``."""
        return content_type.from_bytes(self.data)

    @classmethod
    def from_arbitrary(cls, value) -> RecordContent:
        """Encode a value exposing ``to_bytes()``; raw bytes are taken as they are."""
        if isinstance(value, RecordContent):
            return value
        if isinstance(value, (bytes, bytearray)):
            return cls(bytes(value))
        if hasattr(value, "to_bytes"):
            return cls(bytes(value.to_bytes()))
        raise TypeError(f"cannot serialize {type(value).__name__} as record content")


def _seal(verify_key: VerifyKey, plaintext: bytes) -> bytes:
    return SealedBox(verify_key.to_curve25519_public_key()).encrypt(plaintext)


def _unseal(signing_key: SigningKey, ciphertext: bytes) -> bytes:
    try:
        return SealedBox(signing_key.to_curve25519_private_key()).decrypt(ciphertext)
    except CryptoError as exc:
        raise RecordError("decryption failed") from exc


@dataclass(frozen=True)
class EncryptedRecord:
    """Record sealed to a one-time key, which is itself sealed to the slot key."""

    encrypted_record: bytes
    encrypted_decryption_key: bytes

    def decrypt(self, decryption_key: SigningKey) -> Record:
        one_time_seed = _unseal(decryption_key, self.encrypted_decryption_key)
        if len(one_time_seed) != 32:
            raise RecordError("decrypted key has wrong length")
        one_time_key = SigningKey(one_time_seed)
        return Record.from_bytes(_unseal(one_time_key, self.encrypted_record))

    def to_bytes(self) -> bytes:
        """Length-prefixed layout: u32 LE length, record, then key."""
        return (
            len(self.encrypted_record).to_bytes(4, "little")
            + self.encrypted_record
            + self.encrypted_decryption_key
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> EncryptedRecord:
        data = bytes(data)
        if len(data) < 4:
            raise RecordError("encrypted record too short")
        length = int.from_bytes(data[:4], "little")
        body = data[4:]
        if length > len(body):
            raise RecordError("encrypted record length exceeds buffer")
        return cls(body[:length], body[length:])


@dataclass(frozen=True)
class Record:
    """A signed record announcing a node on a topic for one minute slot."""

    topic: bytes
    unix_minute: int
    node_id: bytes
    raw_content: RecordContent
    signature: bytes

    def __post_init__(self) -> None:
        for name, size in (("topic", TOPIC_LEN), ("node_id", NODE_ID_LEN), ("signature", SIGNATURE_LEN)):
            value = bytes(getattr(self, name))
            if len(value) != size:
                raise RecordError(f"{name} must be {size} bytes")
            object.__setattr__(self, name, value)

    @classmethod
    def sign(cls, topic: bytes, unix_minute: int, node_id: bytes, record_content, signing_key: SigningKey) -> Record:
        content = RecordContent.from_arbitrary(record_content)
        topic, node_id = bytes(topic), bytes(node_id)
        signed = topic + unix_minute.to_bytes(MINUTE_LEN, "little") + node_id + content.data
        signature = signing_key.sign(signed).signature
        return cls(topic, unix_minute, node_id, content, signature)

    @classmethod
    def from_bytes(cls, data: bytes) -> Record:
        data = bytes(data)
        if len(data) < _HEADER_LEN + SIGNATURE_LEN:
            raise RecordError("record too short")
        topic = data[:TOPIC_LEN]
        minute = int.from_bytes(data[TOPIC_LEN:TOPIC_LEN + MINUTE_LEN], "little")
        node_id = data[TOPIC_LEN + MINUTE_LEN:_HEADER_LEN]
        content = RecordContent(data[_HEADER_LEN:-SIGNATURE_LEN])
        return cls(topic, minute, node_id, content, data[-SIGNATURE_LEN:])

    def to_bytes(self) -> bytes:
        return (
            self.topic
            + self.unix_minute.to_bytes(MINUTE_LEN, "little")
            + self.node_id
            + self.raw_content.data
            + self.signature
        )

    def verify(self, actual_topic: bytes, actual_unix_minute: int) -> None:
        """Raise :class:`RecordError` unless topic, minute and signature match."""
        if self.topic != bytes(actual_topic):
            raise RecordError("topic mismatch")
        if self.unix_minute != actual_unix_minute:
            raise RecordError("unix minute mismatch")
        signed = self.to_bytes()[:-SIGNATURE_LEN]
        try:
            VerifyKey(self.node_id).verify(signed, self.signature)
        except (CryptoError, ValueError, TypeError) as exc:
            raise RecordError("invalid record signature") from exc

    def encrypt(self, encryption_key: SigningKey) -> EncryptedRecord:
        one_time_key = SigningKey.generate()
        return EncryptedRecord(
            _seal(one_time_key.verify_key, self.to_bytes()),
            _seal(encryption_key.verify_key, bytes(one_time_key)),
        )

    def content(self, content_type):
        """Decode the record's content as ``content_type``."""
        return self.raw_content.to(content_type)


class RecordPublisher:
    """Creates signed records and publishes them, encrypted, to the DHT."""

    def __init__(
        self,
        record_topic,
        pub_key: VerifyKey,
        signing_key: SigningKey,
        secret_rotation: RotationHandle | None = None,
        initial_secret: bytes = b"",
        dht: Dht | None = None,
    ) -> None:
        if isinstance(initial_secret, str):
            initial_secret = initial_secret.encode()
        self.record_topic = _as_record_topic(record_topic)
        self.pub_key = pub_key
        self.signing_key = signing_key
        self.secret_rotation = secret_rotation
        self.initial_secret_hash = _sha512_32(bytes(initial_secret))
        self.dht = dht if dht is not None else Dht()

    def __repr__(self) -> str:
        return f"RecordPublisher(record_topic={self.record_topic!r})"

    def _encryption_key(self, unix_minute: int) -> SigningKey:
        return encryption_keypair(
            self.record_topic,
            self.secret_rotation or RotationHandle(),
            self.initial_secret_hash,
            unix_minute,
        )

    def new_record(self, unix_minute: int, record_content) -> Record:
        return Record.sign(
            self.record_topic.hash(),
            unix_minute,
            bytes(self.pub_key),
            record_content,
            self.signing_key,
        )

    async def publish_record(self, record: Record) -> None:
        """Publish unless the slot already holds ``MAX_BOOTSTRAP_RECORDS`` records."""
        existing = await self.get_records(record.unix_minute)
        log.debug("found %d existing records for unix_minute %d", len(existing), record.unix_minute)
        if len(existing) >= MAX_BOOTSTRAP_RECORDS:
            log.debug("max records reached (%d), skipping publish", MAX_BOOTSTRAP_RECORDS)
            return

        sign_key = signing_keypair(self.record_topic, record.unix_minute)
        slot_salt = salt(self.record_topic, record.unix_minute)
        encrypted = record.encrypt(self._encryption_key(record.unix_minute))
        await self.dht.put_mutable(
            sign_key,
            sign_key.verify_key,
            slot_salt,
            encrypted.to_bytes(),
            PUT_RETRIES,
            DHT_TIMEOUT,
        )
        log.debug("published record for unix_minute %d", record.unix_minute)

    async def get_records(self, unix_minute: int) -> set[Record]:
        """Fetch, decrypt and verify other nodes' records for a minute slot."""
        topic_sign = signing_keypair(self.record_topic, unix_minute)
        encryption_key = self._encryption_key(unix_minute)
        slot_salt = salt(self.record_topic, unix_minute)
        try:
            items = await self.dht.get(topic_sign.verify_key, slot_salt, None, DHT_TIMEOUT)
        except Exception as exc:  # an unreachable DHT simply yields no records
            log.debug("DHT get failed: %r", exc)
            items = []

        own_id = bytes(self.pub_key)
        topic_hash = self.record_topic.hash()
        records = set()
        for item in items:
            try:
                record = EncryptedRecord.from_bytes(item.value).decrypt(encryption_key)
                record.verify(topic_hash, unix_minute)
            except (RecordError, ValueError):
                continue
            if record.node_id == own_id:
                log.debug("filtered out own record")
                continue
            records.add(record)
        log.debug("verified %d records", len(records))
        return records