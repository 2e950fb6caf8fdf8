"""Networking layer — peer directory, transport and rendezvous seam."""

from hypermind_node.network.directory import (
    CapacityExceeded,
    PeerDirectory,
    StaleSequence,
)
from hypermind_node.network.messages import Announcement
from hypermind_node.network.peer import PeerRecord
from hypermind_node.network.rendezvous import Rendezvous, RendezvousPeer
from hypermind_node.network.transport import Transport

__all__ = [
    "Announcement",
    "CapacityExceeded",
    "PeerDirectory",
    "PeerRecord",
    "Rendezvous",
    "RendezvousPeer",
    "StaleSequence",
    "Transport",
]
