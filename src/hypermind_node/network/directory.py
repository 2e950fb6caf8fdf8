"""Peer directory — the table of currently live peers.

The directory is the only owner of peer state. Every operation takes the
directory lock, so announcements, bootstrap results and the eviction sweep
each see a consistent table even when called from different threads.

Capacity is enforced only when a *new* id is admitted. Peers already being
tracked are always updated and leave the table only by going stale.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Any, Iterable

from hypermind_node.config import MAX_PEERS, PEER_TIMEOUT
from hypermind_node.network.peer import PeerRecord

logger = logging.getLogger(__name__)


class CapacityExceeded(Exception):
    """A new peer was refused because the directory is full."""


class StaleSequence(Exception):
    """An update carried a sequence number older than the stored one."""


class PeerDirectory:
    """Capacity- and TTL-bounded map of peer id -> PeerRecord."""

    def __init__(
        self,
        capacity: int = MAX_PEERS,
        peer_timeout: float = PEER_TIMEOUT,
    ) -> None:
        self.capacity = capacity
        self.peer_timeout = peer_timeout
        self._peers: dict[str, PeerRecord] = {}
        self._lock = threading.Lock()
        self._seq = 0

    @property
    def count(self) -> int:
        return len(self._peers)

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers

    # ── Admission and updates ────────────────────────────────────

    def admit(self, peer_id: str) -> bool:
        """Whether *peer_id* may be upserted without exceeding capacity."""
        with self._lock:
            return self._admit(peer_id)

    def upsert(
        self,
        peer_id: str,
        sequence_number: int,
        key: bytes | None = None,
        ip: str | None = None,
        port: int | None = None,
    ) -> bool:
        """Insert or overwrite a peer, refreshing its last_seen.

        ip/port are kept from the previous record when not given, so a
        rendezvous update doesn't erase an address learned directly.

        Returns:
            True if the peer was not tracked before.
        """
        with self._lock:
            return self._upsert(peer_id, sequence_number, key, ip, port)

    def track(
        self,
        peer_id: str,
        sequence_number: int,
        key: bytes | None = None,
        ip: str | None = None,
        port: int | None = None,
        reject_stale: bool = False,
    ) -> bool:
        """Admit and upsert in one step.

        With *reject_stale*, an update whose sequence number is lower than
        the stored one is refused under the same lock hold.

        Raises:
            CapacityExceeded: If *peer_id* is new and the directory is full.
            StaleSequence: If *reject_stale* is set and the update is older.
        """
        with self._lock:
            existing = self._peers.get(peer_id)
            if (
                reject_stale
                and existing is not None
                and sequence_number < existing.sequence_number
            ):
                raise StaleSequence(
                    f"replayed update from {peer_id[:12]} "
                    f"(seq {sequence_number} < {existing.sequence_number})"
                )
            if not self._admit(peer_id):
                raise CapacityExceeded(
                    f"directory full ({self.capacity} peers), refusing {peer_id[:12]}"
                )
            return self._upsert(peer_id, sequence_number, key, ip, port)

    def touch(self, peer_ids: Iterable[str]) -> int:
        """Refresh last_seen for each tracked id; unknown ids are ignored.

        Returns:
            Number of peers refreshed.
        """
        now = time.time()
        refreshed = 0
        with self._lock:
            for peer_id in peer_ids:
                record = self._peers.get(peer_id)
                if record is not None:
                    record.last_seen = now
                    refreshed += 1
        return refreshed

    def get(self, peer_id: str) -> PeerRecord | None:
        """Return a copy of the record for *peer_id*."""
        with self._lock:
            record = self._peers.get(peer_id)
            return dataclasses.replace(record) if record else None

    def remove(self, peer_id: str) -> bool:
        with self._lock:
            return self._peers.pop(peer_id, None) is not None

    # ── Eviction ─────────────────────────────────────────────────

    def evict_stale(self, timeout: float | None = None) -> int:
        """Remove every peer not seen for more than *timeout* seconds.

        Returns:
            Number of peers removed.
        """
        limit = self.peer_timeout if timeout is None else timeout
        now = time.time()
        with self._lock:
            stale = [pid for pid, p in self._peers.items() if p.age(now) > limit]
            for pid in stale:
                del self._peers[pid]
        if stale:
            logger.debug("Evicted %d stale peers", len(stale))
        return len(stale)

    def prune(self, max_age: float) -> int:
        """Alias of evict_stale used when restoring from a snapshot."""
        return self.evict_stale(max_age)

    # ── Our own sequence number ──────────────────────────────────

    @property
    def sequence(self) -> int:
        return self._seq

    def next_sequence(self) -> int:
        """Increment and return this node's announcement sequence number."""
        with self._lock:
            self._seq += 1
            return self._seq

    # ── Snapshots ────────────────────────────────────────────────

    def snapshot(self) -> list[PeerRecord]:
        with self._lock:
            return [dataclasses.replace(p) for p in self._peers.values()]

    def addressed_peers(self, limit: int | None = None) -> list[PeerRecord]:
        """Peers with a known endpoint, most recently seen first."""
        peers = [p for p in self.snapshot() if p.endpoint is not None]
        peers.sort(key=lambda p: p.last_seen, reverse=True)
        return peers[:limit] if limit is not None else peers

    def to_json(self) -> list[dict[str, Any]]:
        """Serialize peers as plain dicts (lastSeen in ms, key as hex)."""
        return [
            {
                "id": p.peer_id,
                "seq": p.sequence_number,
                "lastSeen": int(p.last_seen * 1000),
                "ip": p.ip,
                "port": p.port,
                "key": p.public_key.hex() if p.public_key else None,
            }
            for p in self.snapshot()
        ]

    def from_json(self, data: Any) -> int:
        """Restore peers produced by to_json(); malformed entries are skipped.

        Restoring stops once the capacity ceiling is reached.

        Returns:
            Number of peers restored.
        """
        if not isinstance(data, list):
            return 0
        restored = 0
        with self._lock:
            for entry in data:
                if not isinstance(entry, dict) or not entry.get("id"):
                    continue
                if not self._admit(entry["id"]):
                    break
                key = entry.get("key")
                last_seen = entry.get("lastSeen")
                try:
                    record = PeerRecord(
                        peer_id=str(entry["id"]),
                        sequence_number=int(entry.get("seq") or 0),
                        last_seen=last_seen / 1000 if last_seen else time.time(),
                        ip=entry.get("ip"),
                        port=entry.get("port"),
                        public_key=bytes.fromhex(key) if key else None,
                    )
                except (TypeError, ValueError):
                    logger.debug("Skipping malformed peer entry: %r", entry)
                    continue
                self._peers[record.peer_id] = record
                restored += 1
        return restored

    def get_stats(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "capacity": self.capacity,
            "addressed": len(self.addressed_peers()),
            "sequence": self._seq,
        }

    # ── Unlocked helpers ─────────────────────────────────────────

    def _admit(self, peer_id: str) -> bool:
        return peer_id in self._peers or len(self._peers) < self.capacity

    def _upsert(
        self,
        peer_id: str,
        sequence_number: int,
        key: bytes | None,
        ip: str | None,
        port: int | None,
    ) -> bool:
        existing = self._peers.get(peer_id)
        if existing is not None:
            ip = ip if ip is not None else existing.ip
            port = port if port is not None else existing.port
        self._peers[peer_id] = PeerRecord(
            peer_id=peer_id,
            sequence_number=sequence_number,
            last_seen=time.time(),
            ip=ip,
            port=port,
            public_key=key,
        )
        return existing is None
