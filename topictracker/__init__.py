"""Peer discovery for gossip topics through signed, encrypted records on the mainline DHT."""

__version__ = "0.2.8"