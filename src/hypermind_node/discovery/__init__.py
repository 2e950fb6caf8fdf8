"""Bootstrap discovery — address-space scan, peer cache, phase orchestration."""

from hypermind_node.discovery.bootstrap import (
    Bootstrapper,
    BootstrapResult,
    ScanExhausted,
    TransientNetworkFailure,
    should_skip_address,
    try_connect_to_peer,
)
from hypermind_node.discovery.cache import CacheUnavailable, CachedPeer, PeerCache
from hypermind_node.discovery.feistel import (
    AddressEnumerator,
    EnumeratorExhausted,
    FeistelPermutation,
    ipv4_to_string,
)

__all__ = [
    "AddressEnumerator",
    "Bootstrapper",
    "BootstrapResult",
    "CacheUnavailable",
    "CachedPeer",
    "EnumeratorExhausted",
    "FeistelPermutation",
    "PeerCache",
    "ScanExhausted",
    "TransientNetworkFailure",
    "ipv4_to_string",
    "should_skip_address",
    "try_connect_to_peer",
]
