"""Bootstrap — find a first reachable peer without any central coordinator.

Phases, each tried only after the previous one definitively fails:
  0. Debug peer: a fixed address from config (single attempt, generous timeout)
  1. Cached peers: addresses that answered in earlier runs, freshest first
  2. IPv4 scan: Feistel-permuted walk over public addresses (opt-in)
  3. Fallback: return None so the caller joins the rendezvous topic

Individual connection failures are expected and only ever mean "try the next
candidate". The scan phase is bounded by a wall-clock deadline; reaching it
cancels every probe still in flight.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from hypermind_node.config import NodeConfig
from hypermind_node.discovery.cache import CachedPeer, PeerCache
from hypermind_node.discovery.feistel import SPACE_SIZE, AddressEnumerator, ipv4_to_string

logger = logging.getLogger(__name__)

ConnectFn = Callable[[str, int, float], Awaitable[bool]]

PROGRESS_LOG_EVERY = 10_000   # Candidates between scan progress lines

# Ranges never worth probing on the public internet
_SKIP_NETWORKS = [
    ipaddress.IPv4Network(net)
    for net in (
        "0.0.0.0/8",        # "this" network
        "10.0.0.0/8",       # RFC1918
        "100.64.0.0/10",    # carrier-grade NAT
        "127.0.0.0/8",      # loopback
        "169.254.0.0/16",   # link-local
        "172.16.0.0/12",    # RFC1918
        "192.168.0.0/16",   # RFC1918
        "224.0.0.0/4",      # multicast
        "240.0.0.0/4",      # reserved, includes broadcast
    )
]
_SKIP_MASKS = [(int(n.netmask), int(n.network_address)) for n in _SKIP_NETWORKS]


class TransientNetworkFailure(Exception):
    """A single connection attempt failed (refused, unreachable, timed out)."""


class ScanExhausted(Exception):
    """The scan ran out of candidates or attempts without finding a peer."""


@dataclass
class BootstrapResult:
    """The first peer reached during bootstrap."""

    ip: str
    port: int
    source: str              # "debug", "cache" or "scan"
    peer_id: str | None = None
    key: bytes | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.ip}:{self.port}"

    def to_cached(self) -> CachedPeer:
        return CachedPeer(
            ip=self.ip,
            port=self.port,
            peer_id=self.peer_id,
            last_seen=time.time(),
            key=self.key,
        )


def should_skip_address(address: str | int) -> bool:
    """True for loopback, private, link-local, multicast and reserved addresses."""
    value = address if isinstance(address, int) else int(ipaddress.IPv4Address(address))
    return any((value & mask) == network for mask, network in _SKIP_MASKS)


async def open_probe_connection(ip: str, port: int, timeout: float) -> None:
    """Open and immediately close a TCP connection.

    Raises:
        TransientNetworkFailure: If the connection can't be established in time.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port), timeout=timeout,
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise TransientNetworkFailure(f"{ip}:{port} unreachable: {e!r}") from e
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        logger.debug("Error closing probe connection to %s:%d", ip, port)


async def try_connect_to_peer(ip: str, port: int, timeout: float = 0.5) -> bool:
    """Attempt a TCP connection; False on any transient failure."""
    try:
        await open_probe_connection(ip, port, timeout)
    except TransientNetworkFailure as e:
        logger.debug("%s", e)
        return False
    return True


class Bootstrapper:
    """Runs the bootstrap phases in order and returns the first peer reached.

    Args:
        config: Node configuration (timeouts, scan policy, debug peer).
        cache: Peer cache; built from config when omitted.
        connect: Async (ip, port, timeout) -> bool probe. Defaults to a
            plain TCP connect; tests substitute a double.
    """

    def __init__(
        self,
        config: NodeConfig,
        cache: PeerCache | None = None,
        connect: ConnectFn | None = None,
    ) -> None:
        self.config = config
        self.cache = cache or PeerCache(
            config.peer_cache_path,
            enabled=config.peer_cache_enabled,
            max_age=config.peer_cache_max_age,
            max_entries=config.peer_cache_max_entries,
        )
        self._connect = connect or try_connect_to_peer
        self._cached: list[CachedPeer] | None = None

    async def bootstrap(self, seed: int) -> BootstrapResult | None:
        """Run all phases; None means "fall back to the rendezvous topic"."""
        logger.info("Starting peer bootstrap with seed %08x", seed)

        result = None
        if self.config.bootstrap_peer_ip:
            result = await self.try_debug_peer()
        if result is None:
            result = await self.retry_cached_peers()
        if result is None and self.config.scan_enabled:
            result = await self.scan_ipv4_space(seed, self.config.bootstrap_timeout)

        if result is None:
            logger.info("No peers found via bootstrap, falling back to DHT discovery")
            return None

        logger.info("Bootstrap complete: %s peer %s", result.source, result.endpoint)
        self._remember(result)
        return result

    async def try_debug_peer(self) -> BootstrapResult | None:
        ip = self.config.bootstrap_peer_ip
        if not ip:
            return None
        port = self.config.scan_port
        logger.info("DEBUG MODE: attempting direct connection to %s:%d", ip, port)
        if await self._connect(ip, port, self.config.debug_connect_timeout):
            return BootstrapResult(ip=ip, port=port, source="debug")
        logger.info("DEBUG: failed to connect to %s:%d, continuing bootstrap", ip, port)
        return None

    async def retry_cached_peers(self) -> BootstrapResult | None:
        """Try peers from earlier runs, most recently seen first."""
        cached = self._load_cached()
        if not cached:
            logger.info("No cached peers available")
            return None

        logger.info("Attempting to reconnect to %d cached peers", len(cached))
        for peer in cached:
            logger.debug("Trying cached peer %s", peer.endpoint)
            if await self._connect(peer.ip, peer.port, self.config.probe_timeout):
                return BootstrapResult(
                    ip=peer.ip,
                    port=peer.port,
                    source="cache",
                    peer_id=peer.peer_id,
                    key=peer.key,
                )

        logger.info("All cached peers unreachable")
        return None

    async def scan_ipv4_space(self, seed: int, timeout: float) -> BootstrapResult | None:
        """Probe Feistel-ordered public addresses until one answers or time runs out."""
        enumerator = AddressEnumerator(seed)
        port = self.config.scan_port
        logger.info("Starting IPv4 scan on port %d with %.1fs timeout", port, timeout)

        try:
            ip = await asyncio.wait_for(self._scan(enumerator, port), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info(
                "IPv4 scan timeout after %d addresses (%.4f%% coverage)",
                enumerator.position, enumerator.position / SPACE_SIZE * 100,
            )
            return None
        except ScanExhausted as e:
            logger.info("IPv4 scan finished without a peer: %s", e)
            return None

        logger.info(
            "Found peer at %s:%d after %d addresses", ip, port, enumerator.position,
        )
        return BootstrapResult(ip=ip, port=port, source="scan")

    # ── Internals ────────────────────────────────────────────────

    def _load_cached(self) -> list[CachedPeer]:
        if self._cached is None:
            self._cached = self.cache.load()
        return self._cached

    def _remember(self, result: BootstrapResult) -> None:
        """Put the found peer at the head of the cache, keeping older hints."""
        if not self.cache.enabled:
            return
        previous = [p for p in self._load_cached() if p.endpoint != result.endpoint]
        self.cache.save([result.to_cached(), *previous])

    async def _scan(self, enumerator: AddressEnumerator, port: int) -> str:
        max_attempts = self.config.scan_max_attempts
        sample_every = max(1, self.config.scan_sample_every)
        max_in_flight = max(1, self.config.scan_max_in_flight)
        started = time.monotonic()
        pending: dict[asyncio.Task[bool], str] = {}
        public = 0

        try:
            for address in enumerator:
                position = enumerator.position
                if max_attempts is not None and position > max_attempts:
                    break
                if position % PROGRESS_LOG_EVERY == 0:
                    logger.info(
                        "Scan progress: %.4f%% (%.1fs)",
                        position / SPACE_SIZE * 100, time.monotonic() - started,
                    )
                if should_skip_address(address):
                    continue
                public += 1
                if public % sample_every:
                    continue

                ip = ipv4_to_string(address)
                task = asyncio.create_task(
                    self._connect(ip, port, self.config.probe_timeout)
                )
                pending[task] = ip
                await asyncio.sleep(0)

                while len(pending) >= max_in_flight:
                    found = await self._first_success(pending)
                    if found:
                        return found

            while pending:
                found = await self._first_success(pending)
                if found:
                    return found
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        raise ScanExhausted(f"no peer after {enumerator.position} addresses")

    @staticmethod
    async def _first_success(pending: dict[asyncio.Task[bool], str]) -> str | None:
        """Wait for at least one probe to finish; return its ip if it connected."""
        done, _ = await asyncio.wait(set(pending), return_when=asyncio.FIRST_COMPLETED)
        found = None
        for task in done:
            ip = pending.pop(task)
            if task.cancelled():
                continue
            if task.exception() is not None:
                logger.debug("Probe to %s raised %r", ip, task.exception())
                continue
            if task.result() and found is None:
                found = ip
        return found
