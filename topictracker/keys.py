"""Key derivation for topic records: signing keys, encryption keys and salts."""

from __future__ import annotations

import abc
import hashlib

from nacl.signing import SigningKey


def _topic_hash(record_topic) -> bytes:
    """Accept a 32-byte hash or an object exposing ``hash()``."""
    value = record_topic if isinstance(record_topic, (bytes, bytearray)) else record_topic.hash()
    value = bytes(value)
    if len(value) != 32:
        raise ValueError("topic hash must be 32 bytes")
    return value


def _check32(name: str, value: bytes) -> bytes:
    value = bytes(value)
    if len(value) != 32:
        raise ValueError(f"{name} must be 32 bytes")
    return value


def _sha512_32(*parts: bytes) -> bytes:
    digest = hashlib.sha512()
    for part in parts:
        digest.update(part)
    return digest.digest()[:32]


class SecretRotation(abc.ABC):
    """Strategy deriving a time-rotated 32-byte encryption key."""

    @abc.abstractmethod
    def derive(self, topic_hash: bytes, unix_minute: int, initial_secret_hash: bytes) -> bytes:
        """Derive the key for one topic and minute slot."""


class DefaultSecretRotation(SecretRotation):
    """SHA-512 over topic hash, big-endian minute and initial secret hash."""

    def derive(self, topic_hash: bytes, unix_minute: int, initial_secret_hash: bytes) -> bytes:
        return _sha512_32(
            _check32("topic_hash", topic_hash),
            unix_minute.to_bytes(8, "big"),
            _check32("initial_secret_hash", initial_secret_hash),
        )


class RotationHandle:
    """Wraps a rotation strategy; defaults to :class:`DefaultSecretRotation`."""

    def __init__(self, rotation: SecretRotation | None = None) -> None:
        self._rotation = rotation if rotation is not None else DefaultSecretRotation()

    def derive(self, topic_hash: bytes, unix_minute: int, initial_secret_hash: bytes) -> bytes:
        return self._rotation.derive(topic_hash, unix_minute, initial_secret_hash)

    def __repr__(self) -> str:
        return "RotationHandle()"


def signing_keypair(record_topic, unix_minute: int) -> SigningKey:
    """Shared Ed25519 key whose public half routes a topic's minute slot in the DHT."""
    seed = _sha512_32(_topic_hash(record_topic), unix_minute.to_bytes(8, "little"))
    return SigningKey(seed)


def encryption_keypair(
    record_topic, secret_rotation_function, initial_secret_hash: bytes, unix_minute: int
) -> SigningKey:
    """Ed25519 key used to encrypt records for a topic and minute slot."""
    rotation = secret_rotation_function if secret_rotation_function is not None else RotationHandle()
    seed = rotation.derive(_topic_hash(record_topic), unix_minute, initial_secret_hash)
    return SigningKey(_check32("derived key", seed))


def salt(record_topic, unix_minute: int) -> bytes:
    """DHT salt: first 32 bytes of SHA-512(topic hash || little-endian minute)."""
    return _sha512_32(_topic_hash(record_topic), unix_minute.to_bytes(8, "little"))