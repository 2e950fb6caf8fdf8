"""Rendezvous seam — the DHT fallback used when bootstrap finds nobody.

The node never looks inside the rendezvous service. It joins the shared
topic, consumes a stream of peer events and leaves on shutdown. Any DHT
client that satisfies the Rendezvous protocol can be plugged in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol


@dataclass
class RendezvousPeer:
    """A peer connection (or disconnection) reported by the rendezvous layer."""

    peer_id: str
    public_key: bytes | None = None
    connected: bool = True


class Rendezvous(Protocol):
    def join(self, topic: bytes) -> AsyncIterator[RendezvousPeer]:
        """Join *topic* and yield peer events until left."""
        ...

    async def leave(self) -> None:
        ...
