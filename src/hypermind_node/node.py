"""Presence node — counts how many other nodes are alive right now.

A node:
1. Serves /health, /stats and /announce on its scan port
2. Bootstraps: debug peer → cached peers → IPv4 scan → rendezvous fallback
3. Tracks every peer that announces itself in the PeerDirectory
4. Announces itself to known peers every heartbeat
5. Evicts peers that stop announcing, so the count heals on its own

The count is approximate by nature; there is no consensus, only timeouts.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any

from hypermind_node.config import TOPIC, NodeConfig
from hypermind_node.discovery.bootstrap import Bootstrapper, BootstrapResult, ConnectFn
from hypermind_node.network.directory import (
    CapacityExceeded,
    PeerDirectory,
    StaleSequence,
)
from hypermind_node.network.messages import Announcement
from hypermind_node.network.rendezvous import Rendezvous
from hypermind_node.network.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class NodeIdentity:
    """This node's key material; the peer id is the hex public key."""

    public_key: bytes

    @property
    def peer_id(self) -> str:
        return self.public_key.hex()

    @classmethod
    def generate(cls) -> NodeIdentity:
        return cls(public_key=secrets.token_bytes(32))


class PresenceNode:
    """Ties together transport, bootstrap, directory and rendezvous."""

    def __init__(
        self,
        config: NodeConfig,
        identity: NodeIdentity | None = None,
        rendezvous: Rendezvous | None = None,
        connect: ConnectFn | None = None,
    ) -> None:
        self.config = config
        self.identity = identity or NodeIdentity.generate()
        self.directory = PeerDirectory(
            capacity=config.max_peers, peer_timeout=config.peer_timeout,
        )
        self.bootstrapper = Bootstrapper(config, connect=connect)
        self.transport = Transport(self.peer_id, host=config.host, port=config.port)
        self.rendezvous = rendezvous
        self.bootstrap_result: BootstrapResult | None = None

        self._rendezvous_peers: set[str] = set()
        self._joined_rendezvous = False
        self._background_tasks: list[asyncio.Task] = []
        self._running = False

        self.transport.on_announcement(self.handle_announcement)
        self.transport.set_stats_provider(self.stats)

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    @property
    def count(self) -> int:
        """Number of live peers, the figure shown to users."""
        return self.directory.count

    def stats(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "count": self.directory.count,
            "connections": len(self._rendezvous_peers),
        }

    # ================================================================
    # Lifecycle
    # ================================================================

    async def start(self) -> None:
        """Start serving, bootstrap, then launch the background loops."""
        self._running = True
        await self.transport.start()

        # Eviction must keep running while bootstrap probes are outstanding
        self._background_tasks.append(asyncio.create_task(self._eviction_loop()))
        self._background_tasks.append(asyncio.create_task(self._diagnostics_loop()))

        seed = self.config.scan_seed
        if seed is None:
            seed = secrets.randbits(32)
        self.bootstrap_result = await self.bootstrapper.bootstrap(seed)

        if self.bootstrap_result is not None:
            self._record_bootstrap_peer(self.bootstrap_result)
        elif self.rendezvous is not None:
            self._joined_rendezvous = True
            self._background_tasks.append(
                asyncio.create_task(self._rendezvous_loop())
            )
        else:
            logger.warning("Bootstrap found no peers and no rendezvous is configured")

        self._background_tasks.append(asyncio.create_task(self._heartbeat_loop()))

        logger.info(
            "Presence node started: peer=%s port=%d bootstrap=%s",
            self.peer_id[:12],
            self.config.port,
            self.bootstrap_result.source if self.bootstrap_result else "rendezvous",
        )

    async def stop(self) -> None:
        """Cancel background work and shut the transport down."""
        self._running = False
        for t in self._background_tasks:
            t.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        if self.rendezvous is not None and self._joined_rendezvous:
            self._joined_rendezvous = False
            try:
                await self.rendezvous.leave()
            except Exception:
                logger.exception("Error leaving rendezvous topic")
        await self.transport.stop()
        logger.info("Presence node stopped")

    # ================================================================
    # Peer input
    # ================================================================

    async def handle_announcement(self, announcement: Announcement, remote_ip: str) -> None:
        """Record a peer's announcement, dropping replays and over-capacity newcomers."""
        if announcement.peer_id == self.peer_id:
            return
        try:
            is_new = self.directory.track(
                announcement.peer_id,
                announcement.seq,
                announcement.key_bytes,
                ip=remote_ip or None,
                port=announcement.port,
                reject_stale=True,
            )
        except (CapacityExceeded, StaleSequence) as e:
            logger.debug("Ignoring announcement: %s", e)
            return
        # Drop the endpoint-keyed placeholder left by bootstrap
        if remote_ip and announcement.port:
            placeholder = f"{remote_ip}:{announcement.port}"
            if placeholder != announcement.peer_id:
                self.directory.remove(placeholder)
        if is_new:
            logger.info("New peer %s (count=%d)", announcement.peer_id[:12], self.count)

    def _record_bootstrap_peer(self, result: BootstrapResult) -> None:
        peer_id = result.peer_id or result.endpoint
        try:
            self.directory.track(
                peer_id, 0, result.key, ip=result.ip, port=result.port,
            )
        except CapacityExceeded as e:
            logger.debug("%s", e)

    # ================================================================
    # Background loops
    # ================================================================

    async def _rendezvous_loop(self) -> None:
        """Feed rendezvous peer events into the directory."""
        assert self.rendezvous is not None
        logger.info("Joining rendezvous topic %s", TOPIC.hex()[:16])
        try:
            async for event in self.rendezvous.join(TOPIC):
                if event.peer_id == self.peer_id:
                    continue
                if not event.connected:
                    self._rendezvous_peers.discard(event.peer_id)
                    self.directory.remove(event.peer_id)
                    continue
                self._rendezvous_peers.add(event.peer_id)
                known = self.directory.get(event.peer_id)
                seq = known.sequence_number if known else 0
                try:
                    self.directory.track(event.peer_id, seq, event.public_key)
                except CapacityExceeded as e:
                    logger.debug("%s", e)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Rendezvous stream failed")

    async def _eviction_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.eviction_interval)
            try:
                # Open rendezvous connections count as liveness
                self.directory.touch(self._rendezvous_peers)
                removed = self.directory.evict_stale()
                if removed:
                    logger.info("Evicted %d stale peers (count=%d)", removed, self.count)
            except Exception:
                logger.exception("Eviction error")

    async def _heartbeat_loop(self) -> None:
        """Announce ourselves to every peer with a known endpoint."""
        while self._running:
            try:
                announcement = Announcement(
                    peer_id=self.peer_id,
                    seq=self.directory.next_sequence(),
                    key=self.identity.public_key.hex(),
                    port=self.config.port,
                )
                endpoints = [p.endpoint for p in self.directory.addressed_peers()]
                if endpoints:
                    await asyncio.gather(*(
                        self.transport.send_announcement(ep, announcement)
                        for ep in endpoints
                    ))
            except Exception:
                logger.exception("Heartbeat error")
            await asyncio.sleep(self.config.heartbeat_interval)

    async def _diagnostics_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.diagnostics_interval)
            stats = self.directory.get_stats()
            logger.info(
                "Peers: count=%d addressed=%d connections=%d seq=%d",
                stats["count"], stats["addressed"],
                len(self._rendezvous_peers), stats["sequence"],
            )
