"""Tests for PresenceNode — announcements, background loops and bootstrap wiring."""

from __future__ import annotations

import asyncio
import socket

import pytest

from hypermind_node.config import TOPIC, NodeConfig
from hypermind_node.network.messages import Announcement
from hypermind_node.network.rendezvous import RendezvousPeer
from hypermind_node.node import NodeIdentity, PresenceNode


# ── Helpers ──────────────────────────────────────────────────────

def free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def make_config(**kwargs) -> NodeConfig:
    defaults = dict(
        host="127.0.0.1",
        port=free_port(),
        peer_cache_enabled=False,
        scan_enabled=False,
        diagnostics_interval=60.0,
    )
    defaults.update(kwargs)
    return NodeConfig(**defaults)


class FakeRendezvous:
    def __init__(self, events: list[RendezvousPeer]) -> None:
        self.events = events
        self.topic: bytes | None = None
        self.left = False

    async def join(self, topic: bytes):
        self.topic = topic
        for event in self.events:
            yield event
            await asyncio.sleep(0)

    async def leave(self) -> None:
        self.left = True


class OpenRendezvous(FakeRendezvous):
    """Yields its events, then keeps the stream open until closed."""

    def __init__(self, events: list[RendezvousPeer]) -> None:
        super().__init__(events)
        self.closed = asyncio.Event()

    async def join(self, topic: bytes):
        async for event in super().join(topic):
            yield event
        await self.closed.wait()


async def never_connects(ip: str, port: int, timeout: float) -> bool:
    return False


def announcement(peer_id: str = "remote", seq: int = 1, **kwargs) -> Announcement:
    return Announcement(peer_id=peer_id, seq=seq, **kwargs)


# ── Announcements ────────────────────────────────────────────────

class TestAnnouncements:
    @pytest.mark.asyncio
    async def test_tracks_new_peer(self):
        node = PresenceNode(make_config())
        await node.handle_announcement(announcement(key="ab", port=3001), "203.0.113.4")
        record = node.directory.get("remote")
        assert node.count == 1
        assert record.public_key == b"\xab"
        assert record.endpoint == "203.0.113.4:3001"

    @pytest.mark.asyncio
    async def test_ignores_self(self):
        node = PresenceNode(make_config())
        await node.handle_announcement(announcement(node.peer_id), "203.0.113.4")
        assert node.count == 0

    @pytest.mark.asyncio
    async def test_ignores_replayed_sequence(self):
        node = PresenceNode(make_config())
        await node.handle_announcement(announcement(seq=5), "203.0.113.4")
        await node.handle_announcement(announcement(seq=3), "203.0.113.4")
        assert node.directory.get("remote").sequence_number == 5

    @pytest.mark.asyncio
    async def test_equal_sequence_refreshes(self):
        node = PresenceNode(make_config())
        await node.handle_announcement(announcement(seq=5), "203.0.113.4")
        first = node.directory.get("remote").last_seen
        await asyncio.sleep(0.01)
        await node.handle_announcement(announcement(seq=5), "203.0.113.4")
        assert node.directory.get("remote").last_seen > first

    @pytest.mark.asyncio
    async def test_capacity_exceeded_is_silent(self):
        node = PresenceNode(make_config(max_peers=1))
        await node.handle_announcement(announcement("a"), "203.0.113.4")
        await node.handle_announcement(announcement("b"), "203.0.113.5")
        assert node.count == 1
        assert "b" not in node.directory

    @pytest.mark.asyncio
    async def test_replaces_bootstrap_placeholder(self):
        node = PresenceNode(make_config())
        node.directory.track("203.0.113.4:3000", 0, ip="203.0.113.4", port=3000)
        await node.handle_announcement(announcement("real-id", port=3000), "203.0.113.4")
        assert node.count == 1
        assert "real-id" in node.directory


# ── Lifecycle ────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_bootstrap_peer_recorded(self):
        async def debug_only(ip, port, timeout):
            return ip == "198.51.100.7"

        node = PresenceNode(
            make_config(bootstrap_peer_ip="198.51.100.7", heartbeat_interval=60.0),
            connect=debug_only,
        )
        await node.start()
        try:
            assert node.bootstrap_result.source == "debug"
            assert "198.51.100.7:3000" in node.directory
        finally:
            await node.stop()

    @pytest.mark.asyncio
    async def test_rendezvous_fallback(self):
        rendezvous = FakeRendezvous([
            RendezvousPeer("peer-a", b"\x01"),
            RendezvousPeer("peer-b"),
            RendezvousPeer("peer-c"),
            RendezvousPeer("peer-b", connected=False),
        ])
        node = PresenceNode(make_config(), rendezvous=rendezvous, connect=never_connects)
        await node.start()
        try:
            await asyncio.sleep(0.1)
            assert rendezvous.topic == TOPIC
            assert node.count == 2
            assert "peer-b" not in node.directory
            assert node.stats()["connections"] == 2
        finally:
            await node.stop()
        assert rendezvous.left is True

    @pytest.mark.asyncio
    async def test_rendezvous_not_joined_after_bootstrap_success(self):
        rendezvous = FakeRendezvous([RendezvousPeer("peer-a")])

        async def always(ip, port, timeout):
            return True

        node = PresenceNode(
            make_config(bootstrap_peer_ip="198.51.100.7", heartbeat_interval=60.0),
            rendezvous=rendezvous, connect=always,
        )
        await node.start()
        await node.stop()
        assert rendezvous.topic is None
        assert rendezvous.left is False

    @pytest.mark.asyncio
    async def test_eviction_loop_removes_silent_peers(self):
        node = PresenceNode(
            make_config(peer_timeout=0.1, eviction_interval=0.05),
            connect=never_connects,
        )
        await node.start()
        try:
            node.directory.track("quiet", 1)
            assert node.count == 1
            await asyncio.sleep(0.4)
            assert node.count == 0
        finally:
            await node.stop()

    @pytest.mark.asyncio
    async def test_open_rendezvous_peer_survives_eviction(self):
        rendezvous = OpenRendezvous([RendezvousPeer("peer-a")])
        node = PresenceNode(
            make_config(peer_timeout=0.2, eviction_interval=0.05),
            rendezvous=rendezvous, connect=never_connects,
        )
        await node.start()
        try:
            node.directory.track("quiet", 1)
            await asyncio.sleep(0.6)
            assert "quiet" not in node.directory
            assert "peer-a" in node.directory
            assert node.count == 1
            assert node.stats()["connections"] == 1
        finally:
            rendezvous.closed.set()
            await node.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_background_tasks(self):
        node = PresenceNode(make_config(), connect=never_connects)
        await node.start()
        tasks = list(node._background_tasks)
        assert tasks
        await node.stop()
        assert all(t.done() for t in tasks)
        assert node._background_tasks == []

    @pytest.mark.asyncio
    async def test_stats_endpoint_reports_count(self):
        import aiohttp

        config = make_config()
        node = PresenceNode(config, connect=never_connects)
        await node.start()
        try:
            node.directory.track("x", 1)
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{config.port}/stats") as resp:
                    data = await resp.json()
            assert data["count"] == 1
            assert data["peer_id"] == node.peer_id
        finally:
            await node.stop()


# ── Two nodes over real HTTP ─────────────────────────────────────

class TestTwoNodes:
    @pytest.mark.asyncio
    async def test_nodes_find_and_count_each_other(self):
        port_a = free_port()
        node_a = PresenceNode(make_config(port=port_a, heartbeat_interval=0.1))
        node_b = PresenceNode(make_config(
            bootstrap_peer_ip="127.0.0.1",
            scan_port=port_a,
            heartbeat_interval=0.1,
        ))
        await node_a.start()
        await node_b.start()
        try:
            for _ in range(50):
                if node_a.count == 1 and node_b.count == 1 and node_a.peer_id in node_b.directory:
                    break
                await asyncio.sleep(0.1)
            assert node_b.bootstrap_result.source == "debug"
            assert node_a.peer_id in node_b.directory
            assert node_b.peer_id in node_a.directory
            assert node_a.count == 1
            assert node_b.count == 1
        finally:
            await node_b.stop()
            await node_a.stop()


# ── Identity ─────────────────────────────────────────────────────

class TestIdentity:
    def test_peer_id_is_hex_key(self):
        identity = NodeIdentity(public_key=b"\x00\xff")
        assert identity.peer_id == "00ff"

    def test_generate_unique(self):
        assert NodeIdentity.generate().peer_id != NodeIdentity.generate().peer_id
