"""CLI entry point for launching a presence node.

Usage:
    hypermind-node
    hypermind-node --config node_config.json --port 3001
    hypermind-node --scan --cache --cache-path ./peers.json
    hypermind-node --peer 203.0.113.7

Environment variables:
    PORT, SCAN_PORT, SCAN_ENABLED, BOOTSTRAP_TIMEOUT (ms), PEER_TIMEOUT (ms),
    MAX_PEERS, PEER_CACHE_ENABLED, PEER_CACHE_PATH, PEER_CACHE_MAX_AGE (s),
    BOOTSTRAP_PEER_IP
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from hypermind_node.config import NodeConfig, load_config
from hypermind_node.node import PresenceNode


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Launch a hypermind presence node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to JSON config file",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Override listening port",
    )
    parser.add_argument(
        "--scan",
        action="store_true",
        default=None,
        help="Enable the IPv4 bootstrap scan",
    )
    parser.add_argument(
        "--cache",
        action="store_true",
        default=None,
        help="Enable the on-disk peer cache",
    )
    parser.add_argument(
        "--cache-path",
        help="Peer cache file location",
    )
    parser.add_argument(
        "--peer",
        help="Debug: connect directly to this peer IP before anything else",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> NodeConfig:
    overrides = {
        "port": args.port,
        "scan_enabled": args.scan,
        "peer_cache_enabled": args.cache,
        "peer_cache_path": args.cache_path,
        "bootstrap_peer_ip": args.peer,
    }
    try:
        return load_config(args.config, overrides)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


async def run_node(node: PresenceNode) -> None:
    """Start the node and run until interrupted."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        print("\nShutting down...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await node.start()
    await stop_event.wait()
    await node.stop()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = build_config(args)
    node = PresenceNode(config)

    print("=" * 60)
    print("  Hypermind Presence Node")
    print("=" * 60)
    print(f"  Identity: {node.peer_id[:16]}...")
    print(f"  Port: {config.port}")
    print(f"  Scan: {'on' if config.scan_enabled else 'off'} (port {config.scan_port}, "
          f"{config.bootstrap_timeout:.0f}s budget)")
    print(f"  Cache: {config.peer_cache_path if config.peer_cache_enabled else 'off'}")
    if config.bootstrap_peer_ip:
        print(f"  Debug peer: {config.bootstrap_peer_ip}")
    print("=" * 60 + "\n")

    asyncio.run(run_node(node))


if __name__ == "__main__":
    main()
