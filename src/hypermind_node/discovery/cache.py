"""Peer cache — versioned JSON snapshot of peers seen in earlier runs.

File format (version 1):

    {
      "version": 1,
      "timestamp": 1760000000000,          # ms since epoch, write time
      "peers": [
        {"id": "ab12..", "ip": "203.0.113.7", "port": 3000,
         "lastSeen": 1759999990000, "key": "ab12.." | null},
        ...
      ]
    }

Peers are stored most-recently-seen first and capped at max_entries. The cache
is a hint: a missing, corrupt or foreign-version file degrades to an empty
result with a warning and never blocks bootstrap.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hypermind_node.config import CACHE_MAX_ENTRIES, CACHE_VERSION

logger = logging.getLogger(__name__)


class CacheUnavailable(Exception):
    """The cache file exists but cannot be used."""


@dataclass
class CachedPeer:
    """A simplified peer record as persisted in the cache."""

    ip: str
    port: int
    peer_id: str | None = None
    last_seen: float = field(default_factory=time.time)
    key: bytes | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.ip}:{self.port}"

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.last_seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.peer_id,
            "ip": self.ip,
            "port": self.port,
            "lastSeen": int(self.last_seen * 1000),
            "key": self.key.hex() if self.key else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedPeer:
        """Parse one cache entry.

        Raises:
            ValueError: If the entry lacks a usable ip/port.
        """
        ip = data.get("ip")
        port = data.get("port")
        if not isinstance(ip, str) or not ip:
            raise ValueError("cache entry has no ip")
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError(f"cache entry has invalid port {port!r}")
        key = data.get("key")
        return cls(
            ip=ip,
            port=port,
            peer_id=data.get("id"),
            last_seen=(data.get("lastSeen") or 0) / 1000,
            key=bytes.fromhex(key) if key else None,
        )


class PeerCache:
    """Loads, prunes and atomically saves the peer cache file.

    When disabled, load() returns [] and save() is a no-op without touching
    the filesystem.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_age: float = 86_400.0,
        max_entries: int = CACHE_MAX_ENTRIES,
    ) -> None:
        self.path = Path(path)
        self.enabled = enabled
        self.max_age = max_age
        self.max_entries = max_entries

    def load(self) -> list[CachedPeer]:
        """Return fresh cached peers, most recently seen first."""
        if not self.enabled:
            return []
        try:
            peers = self._read()
        except CacheUnavailable as e:
            logger.warning("Ignoring peer cache %s: %s", self.path, e)
            return []

        fresh = self.prune(peers, self.max_age)
        if len(fresh) < len(peers):
            logger.info("Pruned %d stale peers from cache", len(peers) - len(fresh))
        fresh.sort(key=lambda p: p.last_seen, reverse=True)
        return fresh

    def save(self, peers: list[CachedPeer]) -> bool:
        """Replace the cache file with a snapshot of *peers*.

        Returns:
            True if the file was written.
        """
        if not self.enabled:
            return False

        ordered = sorted(peers, key=lambda p: p.last_seen, reverse=True)
        data = {
            "version": CACHE_VERSION,
            "timestamp": int(time.time() * 1000),
            "peers": [p.to_dict() for p in ordered[: self.max_entries]],
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            logger.warning("Failed to save peer cache %s: %s", self.path, e)
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            return False

        logger.info("Saved %d peers to cache", len(data["peers"]))
        return True

    @staticmethod
    def prune(peers: list[CachedPeer], max_age: float) -> list[CachedPeer]:
        """Keep only peers seen less than *max_age* seconds ago."""
        now = time.time()
        return [p for p in peers if p.age(now) < max_age]

    def _read(self) -> list[CachedPeer]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError, RecursionError) as e:
            raise CacheUnavailable(f"unreadable: {e}") from e

        if not isinstance(data, dict):
            raise CacheUnavailable("not a versioned cache object")
        if data.get("version") != CACHE_VERSION:
            raise CacheUnavailable(f"unsupported version {data.get('version')!r}")
        entries = data.get("peers")
        if not isinstance(entries, list):
            raise CacheUnavailable("'peers' is not a list")

        peers = []
        for entry in entries:
            try:
                peers.append(CachedPeer.from_dict(entry))
            except (AttributeError, TypeError, ValueError):
                logger.debug("Skipping malformed cache entry: %r", entry)
        return peers
