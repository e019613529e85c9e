# topictracker

Automatic peer discovery for a named topic. Nodes that share a topic
name (and an optional shared secret) find each other through the mainline
BitTorrent DHT without knowing any peer in advance. They then join a
gossip swarm for that topic.

## How it works

- Time is divided into one-minute slots (`topictracker.timeslot.unix_minute`).
- For every topic and slot, a deterministic Ed25519 key (`signing_keypair`)
  and a DHT salt (`salt`) select a mutable DHT slot that all nodes agree on.
- Each node writes a `Record` into that slot. The record is signed with the
  node's own key. It is then encrypted with a key derived from the topic,
  the slot and a hash of the shared secret (`encryption_keypair`, with a
  pluggable `RotationHandle`).
- A node does not publish into a slot that already holds
  `MAX_BOOTSTRAP_RECORDS` (100) records.
- Once a node is connected, three background tasks take over:
  - a `Publisher` keeps advertising its neighbours and recent message
    hashes (`GossipRecordContent`);
  - `BubbleMerge` joins peers from the DHT while the node has fewer than
    four neighbours;
  - `MessageOverlapMerge` joins peers whose published message hashes match
    messages seen locally.

## Installation

```
pip install topictracker
```

To run the tests:

```
pip install "topictracker[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `topictracker.timeslot` | `unix_minute(minute_offset)`, `MAX_BOOTSTRAP_RECORDS` |
| `topictracker.keys` | `SecretRotation`, `DefaultSecretRotation`, `RotationHandle`, `signing_keypair`, `encryption_keypair`, `salt` |
| `topictracker.content` | `GossipRecordContent`: five peer ids and five message hashes, encoded as 320 bytes |
| `topictracker.dht` | `bencode`, `bdecode`, `MutableItem` (BEP 44), `Dht`, `KrpcBackend`, `DhtError`, `InvalidItem` |
| `topictracker.record` | `RecordTopic`, `RecordContent`, `Record`, `EncryptedRecord`, `RecordPublisher`, `RecordError` |
| `topictracker.receiver` | `GossipReceiver` and the events `Received`, `NeighborUp`, `NeighborDown`, `Lagged` |
| `topictracker.sender` | `GossipSender`, `GossipError` |
| `topictracker.merge` | `BubbleMerge`, `MessageOverlapMerge` |
| `topictracker.publisher` | `Publisher` |
| `topictracker.bootstrap` | `Bootstrap` |
| `topictracker.topic` | `TopicId`, `Topic`, `subscribe_and_join_with_auto_discovery`, `subscribe_and_join_with_auto_discovery_no_wait` |

## Key derivation

```python
from topictracker.keys import RotationHandle, encryption_keypair, salt, signing_keypair
from topictracker.record import RecordTopic
from topictracker.timeslot import unix_minute

topic = RecordTopic.from_str("chat-app-v1")
minute = unix_minute(0)

routing_key = signing_keypair(topic, minute)  # identical on every node
slot_salt = salt(topic, minute)               # 32 bytes
enc_key = encryption_keypair(topic, RotationHandle(), bytes(32), minute)
```

`RotationHandle()` uses `DefaultSecretRotation`. To supply your own
strategy, subclass `SecretRotation` and pass an instance to
`RotationHandle(...)`.

## Signing and encrypting records

```python
from nacl.signing import SigningKey

from topictracker.content import GossipRecordContent
from topictracker.record import Record

node_key = SigningKey.generate()
record = Record.sign(
    topic.hash(),
    minute,
    bytes(node_key.verify_key),
    GossipRecordContent.empty(),
    node_key,
)

record.verify(topic.hash(), minute)  # raises RecordError on a mismatch

encrypted = record.encrypt(enc_key)
restored = encrypted.decrypt(enc_key)
content = restored.content(GossipRecordContent)
```

`Record` and `EncryptedRecord` both round-trip through `to_bytes()` and
`from_bytes()`.

## Publishing and reading records

```python
from topictracker.record import RecordPublisher

publisher = RecordPublisher(
    "chat-app-v1",
    node_key.verify_key,
    node_key,
    initial_secret=b"shared between nodes",
)
await publisher.publish_record(publisher.new_record(minute, GossipRecordContent.empty()))
others = await publisher.get_records(minute)
```

The first argument of `RecordPublisher` can be any of these:

- a `RecordTopic`;
- a topic name;
- a 32-byte hash;
- a `TopicId`.

`get_records` does the following:

- returns only records that decrypt and verify;
- leaves out the node's own records;
- returns an empty set when the DHT cannot be reached.

By default, `RecordPublisher` creates a `Dht` backed by `KrpcBackend`,
which talks KRPC over UDP to the public bootstrap routers. You can pass
your own `Dht(backend_factory=...)` instead. Its backend needs async
`start`, `get_mutable`, `get_mutable_most_recent` and `put_mutable`
methods, plus a `close` method.

## Joining a topic

```python
from topictracker.topic import subscribe_and_join_with_auto_discovery

topic = await subscribe_and_join_with_auto_discovery(gossip, publisher)
sender, receiver = await topic.split()

await sender.broadcast(b"hello")
event = await receiver.next()   # None once the receiver is closed

topic.close()
```

`subscribe_and_join_with_auto_discovery` waits until at least one neighbour
is connected. `subscribe_and_join_with_auto_discovery_no_wait` returns at
once and keeps bootstrapping in the background.

A `GossipReceiver` can also be read with `async for`. Its
`last_message_hashes()` returns the first 32 bytes of the SHA-512 of every
message received so far.

`TopicId("chat-room-1")` hashes a topic name. Its `record_topic()` returns
the matching `RecordTopic`.

## What the package does not do

The package contains no gossip protocol of its own. The `gossip` object
passed to `Topic.create` and to the subscribe functions must provide the
following:

- an async `subscribe(topic_hash, peers)` method that returns an object with
  a `split()` method;
- `split()` returns a raw sender and a raw receiver.
- The raw sender has async `broadcast`, `broadcast_neighbors` and
  `join_peers` methods.
- The raw receiver is an async iterable of `Received`, `NeighborUp`,
  `NeighborDown` and `Lagged` events. It also has plain `neighbors()` and
  `is_joined()` methods.

Other limits:

- `KrpcBackend` only sends queries. It does not answer queries from other
  DHT nodes or store items for them.
- A `Publisher` round succeeds only when the node has exactly five
  neighbours and five message hashes, because `GossipRecordContent` holds
  exactly five of each. Other rounds fail and are retried later.
- There is no command-line program.