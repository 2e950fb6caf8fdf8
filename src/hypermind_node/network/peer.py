"""Peer records — identity and liveness state of one known peer."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class PeerRecord:
    """A peer tracked in the directory.

    ip/port are only known for peers reached directly; peers learned through
    the rendezvous layer carry None.
    """

    peer_id: str
    sequence_number: int = 0
    last_seen: float = field(default_factory=time.time)
    ip: str | None = None
    port: int | None = None
    public_key: bytes | None = None

    @property
    def endpoint(self) -> str | None:
        """Full endpoint address, if known."""
        if self.ip is None or self.port is None:
            return None
        return f"{self.ip}:{self.port}"

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.last_seen

    def is_stale(self, timeout_seconds: float) -> bool:
        """Check if peer hasn't been seen within the timeout."""
        return self.age() > timeout_seconds
