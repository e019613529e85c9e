"""Record content advertising active peers and recent message hashes."""

from __future__ import annotations

from dataclasses import dataclass

SLOTS = 5
HASH_LEN = 32
_ZERO = bytes(HASH_LEN)


def _normalise(name: str, entries) -> tuple[bytes, ...]:
    entries = tuple(bytes(entry) for entry in entries)
    if len(entries) != SLOTS:
        raise ValueError(f"{name} must hold exactly {SLOTS} entries")
    if any(len(entry) != HASH_LEN for entry in entries):
        raise ValueError(f"every entry of {name} must be {HASH_LEN} bytes")
    return entries


@dataclass(frozen=True)
class GossipRecordContent:
    """Five peer ids and five message hashes; empty slots are zero-filled."""

    active_peers: tuple[bytes, ...]
    last_message_hashes: tuple[bytes, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "active_peers", _normalise("active_peers", self.active_peers))
        object.__setattr__(
            self, "last_message_hashes", _normalise("last_message_hashes", self.last_message_hashes)
        )

    @classmethod
    def empty(cls) -> GossipRecordContent:
        return cls((_ZERO,) * SLOTS, (_ZERO,) * SLOTS)

    def to_bytes(self) -> bytes:
        """Encode as fixed-size arrays: 320 bytes, no length prefixes."""
        return b"".join(self.active_peers) + b"".join(self.last_message_hashes)

    @classmethod
    def from_bytes(cls, data: bytes) -> GossipRecordContent:
        """Decode from the fixed layout; trailing bytes are ignored."""
        data = bytes(data)
        size = SLOTS * HASH_LEN
        if len(data) < 2 * size:
            raise ValueError("record content too short")
        chunks = [data[i : i + HASH_LEN] for i in range(0, 2 * size, HASH_LEN)]
        return cls(tuple(chunks[:SLOTS]), tuple(chunks[SLOTS:]))