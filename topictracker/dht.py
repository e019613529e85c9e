"""Mainline DHT client for signed mutable records."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import random
import socket
from dataclasses import dataclass
from typing import Callable

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

log = logging.getLogger(__name__)

RETRY_DEFAULT = 3
PUT_TIMEOUT = 10.0
DEFAULT_BOOTSTRAP = (
    ("router.bittorrent.com", 6881),
    ("dht.transmissionbt.com", 6881),
    ("dht.libtorrent.org", 25401),
    ("router.utorrent.com", 6881),
)
K = 8
ALPHA = 8
MAX_ROUNDS = 20


class DhtError(Exception):
    """Raised when a DHT operation fails."""


class InvalidItem(DhtError):
    """Raised when a mutable item's signature does not verify."""


# --- bencoding -----------------------------------------------------------


def bencode(value) -> bytes:
    """Encode ints, bytes, str, lists and dicts in bencode."""
    if isinstance(value, bool):
        raise TypeError("cannot bencode bool")
    if isinstance(value, int):
        return b"i%de" % value
    if isinstance(value, str):
        value = value.encode()
    if isinstance(value, (bytes, bytearray)):
        return b"%d:" % len(value) + bytes(value)
    if isinstance(value, (list, tuple)):
        return b"l" + b"".join(bencode(v) for v in value) + b"e"
    if isinstance(value, dict):
        items = sorted((k.encode() if isinstance(k, str) else bytes(k), v) for k, v in value.items())
        return b"d" + b"".join(bencode(k) + bencode(v) for k, v in items) + b"e"
    raise TypeError(f"cannot bencode {type(value).__name__}")


def _decode_at(data: bytes, pos: int):
    if pos >= len(data):
        raise ValueError("unexpected end of data")
    head = data[pos : pos + 1]
    if head == b"i":
        end = data.index(b"e", pos)
        return int(data[pos + 1 : end]), end + 1
    if head == b"l":
        pos += 1
        items = []
        while data[pos : pos + 1] != b"e":
            item, pos = _decode_at(data, pos)
            items.append(item)
        return items, pos + 1
    if head == b"d":
        pos += 1
        result = {}
        while data[pos : pos + 1] != b"e":
            key, pos = _decode_at(data, pos)
            if not isinstance(key, bytes):
                raise ValueError("dictionary key must be a string")
            result[key], pos = _decode_at(data, pos)
        return result, pos + 1
    if head.isdigit():
        colon = data.index(b":", pos)
        length = int(data[pos:colon])
        end = colon + 1 + length
        if end > len(data):
            raise ValueError("string runs past end of data")
        return data[colon + 1 : end], end
    raise ValueError(f"invalid bencode at offset {pos}")


def bdecode(data: bytes):
    """Decode one bencoded value; strings come back as bytes."""
    try:
        value, end = _decode_at(bytes(data), 0)
    except IndexError as exc:
        raise ValueError("truncated bencode") from exc
    if end != len(data):
        raise ValueError("trailing data after bencoded value")
    return value


# --- mutable items -------------------------------------------------------


def _signable(value: bytes, seq: int, salt: bytes | None) -> bytes:
    prefix = b"4:salt" + bencode(salt) if salt else b""
    return prefix + b"3:seqi%de1:v" % seq + bencode(value)


@dataclass(frozen=True)
class MutableItem:
    """A BEP 44 mutable item: value signed by ``key`` at sequence ``seq``."""

    key: bytes
    value: bytes
    seq: int
    signature: bytes
    salt: bytes | None = None

    @classmethod
    def sign(cls, signing_key: SigningKey, value: bytes, seq: int, salt: bytes | None = None) -> MutableItem:
        value = bytes(value)
        salt = bytes(salt) if salt else None
        signature = signing_key.sign(_signable(value, seq, salt)).signature
        return cls(bytes(signing_key.verify_key), value, seq, signature, salt)

    def verify(self) -> None:
        """Raise :class:`InvalidItem` unless the signature is valid."""
        try:
            VerifyKey(self.key).verify(_signable(self.value, self.seq, self.salt), self.signature)
        except (BadSignatureError, ValueError, TypeError) as exc:
            raise InvalidItem("invalid mutable item signature") from exc

    @property
    def target(self) -> bytes:
        return hashlib.sha1(self.key + (self.salt or b"")).digest()


# --- KRPC network backend ------------------------------------------------


class _KrpcProtocol(asyncio.DatagramProtocol):
    def __init__(self, pending: dict) -> None:
        self._pending = pending

    def datagram_received(self, data, addr) -> None:
        try:
            msg = bdecode(data)
        except ValueError:
            return
        if not isinstance(msg, dict):
            return
        fut = self._pending.get(msg.get(b"t"))
        if fut is None or fut.done():
            return
        reply = msg.get(b"r")
        fut.set_result(reply if msg.get(b"y") == b"r" and isinstance(reply, dict) else None)


def _distance(a: bytes, b: bytes) -> int:
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


def _parse_nodes(blob) -> list:
    if not isinstance(blob, bytes):
        return []
    nodes = []
    for start in range(0, len(blob) - len(blob) % 26, 26):
        chunk = blob[start : start + 26]
        port = int.from_bytes(chunk[24:26], "big")
        if port:
            nodes.append((chunk[:20], (socket.inet_ntoa(chunk[20:24]), port)))
    return nodes


class KrpcBackend:
    """Read-only mainline DHT node speaking KRPC over UDP."""

    def __init__(self, bootstrap=DEFAULT_BOOTSTRAP, query_timeout: float = 2.0) -> None:
        self._bootstrap = tuple(bootstrap)
        self._query_timeout = query_timeout
        self._node_id = os.urandom(20)
        self._pending: dict = {}
        self._tid = 0
        self._transport = None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _KrpcProtocol(self._pending), local_addr=("0.0.0.0", 0)
        )

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        for fut in self._pending.values():
            fut.cancel()
        self._pending.clear()

    async def _query(self, addr, method: str, args: dict):
        if self._transport is None:
            raise DhtError("DHT not initialized")
        self._tid = (self._tid + 1) % 65536
        tid = self._tid.to_bytes(2, "big")
        fut = asyncio.get_running_loop().create_future()
        self._pending[tid] = fut
        message = {b"t": tid, b"y": b"q", b"q": method.encode(), b"a": {b"id": self._node_id, **args}}
        try:
            self._transport.sendto(bencode(message), addr)
            return await asyncio.wait_for(fut, self._query_timeout)
        except (asyncio.TimeoutError, OSError):
            return None
        finally:
            self._pending.pop(tid, None)

    async def _bootstrap_addrs(self) -> list:
        loop = asyncio.get_running_loop()
        addrs = []
        for host, port in self._bootstrap:
            try:
                infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
            except OSError:
                continue
            if infos:
                addrs.append(infos[0][4][:2])
        return addrs

    async def _lookup(self, target: bytes) -> list:
        """Iterative ``get`` lookup; returns (addr, reply) sorted by closeness."""
        far = 1 << 160
        candidates = {addr: far for addr in await self._bootstrap_addrs()}
        queried: set = set()
        replies: dict = {}
        for _ in range(MAX_ROUNDS):
            batch = sorted((a for a in candidates if a not in queried), key=candidates.get)[:ALPHA]
            if not batch:
                break
            closest = sorted(d for d, _ in replies.values())[:K]
            if len(closest) >= K and candidates[batch[0]] >= closest[-1]:
                break
            queried.update(batch)
            results = await asyncio.gather(*(self._query(a, "get", {b"target": target}) for a in batch))
            for addr, reply in zip(batch, results):
                if reply is None:
                    continue
                node_id = reply.get(b"id")
                if isinstance(node_id, bytes) and len(node_id) == 20:
                    replies[addr] = (_distance(node_id, target), reply)
                for nid, naddr in _parse_nodes(reply.get(b"nodes")):
                    candidates.setdefault(naddr, _distance(nid, target))
        ordered = sorted(replies.items(), key=lambda kv: kv[1][0])
        return [(addr, reply) for addr, (_, reply) in ordered]

    @staticmethod
    def _item_from_reply(public_key: bytes, salt, reply: dict):
        value, sig, seq = reply.get(b"v"), reply.get(b"sig"), reply.get(b"seq")
        if not isinstance(value, bytes) or not isinstance(sig, bytes) or not isinstance(seq, int):
            return None
        if reply.get(b"k", public_key) != public_key:
            return None
        item = MutableItem(public_key, value, seq, sig, salt or None)
        try:
            item.verify()
        except InvalidItem:
            return None
        return item

    async def get_mutable(self, public_key: bytes, salt, more_recent_than) -> list:
        target = hashlib.sha1(public_key + (salt or b"")).digest()
        found: dict = {}
        for _, reply in await self._lookup(target):
            item = self._item_from_reply(public_key, salt, reply)
            if item is not None and (more_recent_than is None or item.seq > more_recent_than):
                found.setdefault(item.signature, item)
        return list(found.values())

    async def get_mutable_most_recent(self, public_key: bytes, salt):
        items = await self.get_mutable(public_key, salt, None)
        return max(items, key=lambda item: item.seq, default=None)

    async def put_mutable(self, item: MutableItem, cas: int | None = None) -> None:
        nodes = [(a, r) for a, r in await self._lookup(item.target) if isinstance(r.get(b"token"), bytes)]
        args = {b"k": item.key, b"v": item.value, b"sig": item.signature, b"seq": item.seq}
        if item.salt:
            args[b"salt"] = item.salt
        if cas is not None:
            args[b"cas"] = cas
        results = await asyncio.gather(
            *(self._query(addr, "put", {**args, b"token": reply[b"token"]}) for addr, reply in nodes[:K])
        )
        if not any(result is not None for result in results):
            raise DhtError("no node accepted the put")


# --- client --------------------------------------------------------------


def _key_bytes(pub_key) -> bytes:
    return bytes(pub_key)


class Dht:
    """DHT client serialising get/put of mutable records, with retries."""

    def __init__(self, backend_factory: Callable[[], object] | None = None) -> None:
        self._factory = backend_factory or KrpcBackend
        self._backend = None
        self._lock = asyncio.Lock()

    async def _reset(self) -> None:
        if self._backend is not None:
            self._backend.close()
        backend = self._factory()
        await backend.start()
        self._backend = backend

    async def get(self, pub_key, salt=None, more_recent_than=None, timeout: float = 10.0) -> list:
        """Fetch mutable items newer than ``more_recent_than``; times out with ``asyncio.TimeoutError``."""
        async with self._lock:
            if self._backend is None:
                await self._reset()
            return await asyncio.wait_for(
                self._backend.get_mutable(_key_bytes(pub_key), salt, more_recent_than), timeout
            )

    async def put_mutable(
        self, signing_key, pub_key, salt, data: bytes, retry_count=None, timeout: float = 10.0
    ) -> None:
        """Publish ``data`` with a sequence one past the most recent item."""
        attempts = RETRY_DEFAULT if retry_count is None else retry_count
        key = _key_bytes(pub_key)
        async with self._lock:
            if self._backend is None:
                await self._reset()
            for attempt in range(attempts):
                latest = await asyncio.wait_for(self._backend.get_mutable_most_recent(key, salt), timeout)
                seq = latest.seq + 1 if latest is not None else 0
                item = MutableItem.sign(signing_key, data, seq, salt)
                try:
                    await asyncio.wait_for(self._backend.put_mutable(item, item.seq), PUT_TIMEOUT)
                    return
                except Exception as exc:  # any failed put is retried
                    log.debug("put attempt %d failed: %r", attempt, exc)
                if attempt == attempts - 1:
                    raise DhtError("failed to publish record")
                await self._reset()
                await asyncio.sleep(random.randrange(2000) / 1000)

    def close(self) -> None:
        if self._backend is not None:
            self._backend.close()
            self._backend = None