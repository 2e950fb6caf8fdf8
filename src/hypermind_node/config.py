"""Node configuration — protocol constants plus tunable bootstrap settings.

Settings come from three layers, later ones winning:
  1. Dataclass defaults (the values every node ships with)
  2. Environment variables (container deployments)
  3. A JSON config file and CLI overrides
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

# ── Protocol constants ──────────────────────────────────────────────

TOPIC_NAME = "hypermind-lklynet-v1"
TOPIC = hashlib.sha256(TOPIC_NAME.encode()).digest()

MAX_PEERS = 10_000            # Directory capacity ceiling
MAX_MESSAGE_SIZE = 2048       # Bytes accepted on /announce
HEARTBEAT_INTERVAL = 5.0      # Seconds between our own announcements
PEER_TIMEOUT = 15.0           # Seconds without an announcement before eviction
DIAGNOSTICS_INTERVAL = 10.0   # Seconds between status log lines

DEFAULT_PORT = 3000
CACHE_VERSION = 1
CACHE_MAX_ENTRIES = 100


@dataclass
class NodeConfig:
    """Full configuration for a presence node."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT

    # Directory
    max_peers: int = MAX_PEERS
    peer_timeout: float = PEER_TIMEOUT
    eviction_interval: float = PEER_TIMEOUT / 3
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    diagnostics_interval: float = DIAGNOSTICS_INTERVAL

    # Bootstrap
    scan_enabled: bool = False
    scan_port: int = DEFAULT_PORT
    bootstrap_timeout: float = 10.0    # Wall-clock budget for the scan phase
    probe_timeout: float = 0.5         # Per-attempt timeout (cache + scan)
    debug_connect_timeout: float = 2.0
    scan_sample_every: int = 100       # Probe only every Nth public candidate
    scan_max_in_flight: int = 64
    scan_max_attempts: int | None = None
    scan_seed: int | None = None       # Fresh random seed when None
    bootstrap_peer_ip: str | None = None

    # Peer cache
    peer_cache_enabled: bool = False
    peer_cache_path: str = "./peers.json"
    peer_cache_max_age: float = 86_400.0
    peer_cache_max_entries: int = CACHE_MAX_ENTRIES

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> NodeConfig:
        """Build a config from environment variables.

        Durations follow the deployment conventions: BOOTSTRAP_TIMEOUT and
        PEER_TIMEOUT are milliseconds, PEER_CACHE_MAX_AGE is seconds.
        """
        env = os.environ if environ is None else environ
        config = cls()

        port = _env_int(env, "PORT")
        if port is not None:
            config.port = port
        scan_port = _env_int(env, "SCAN_PORT")
        if scan_port is not None:
            config.scan_port = scan_port
        timeout_ms = _env_int(env, "BOOTSTRAP_TIMEOUT")
        if timeout_ms is not None:
            config.bootstrap_timeout = timeout_ms / 1000
        peer_timeout_ms = _env_int(env, "PEER_TIMEOUT")
        if peer_timeout_ms is not None:
            config.peer_timeout = peer_timeout_ms / 1000
            config.eviction_interval = config.peer_timeout / 3
        max_peers = _env_int(env, "MAX_PEERS")
        if max_peers is not None:
            config.max_peers = max_peers
        max_age = _env_int(env, "PEER_CACHE_MAX_AGE")
        if max_age is not None:
            config.peer_cache_max_age = float(max_age)

        config.scan_enabled = env.get("SCAN_ENABLED", "").lower() == "true"
        config.peer_cache_enabled = env.get("PEER_CACHE_ENABLED", "").lower() == "true"
        if env.get("PEER_CACHE_PATH"):
            config.peer_cache_path = env["PEER_CACHE_PATH"]
        if env.get("BOOTSTRAP_PEER_IP"):
            config.bootstrap_peer_ip = env["BOOTSTRAP_PEER_IP"]
        return config


def _env_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> NodeConfig:
    """Load node configuration: env defaults, then JSON file, then overrides.

    Unknown keys in the JSON file are ignored; known ones are converted to
    the field's type.

    Raises:
        FileNotFoundError: If config_path is given but doesn't exist.
        ValueError: If the file is not a JSON object or a value has the
            wrong type.
    """
    config = NodeConfig.from_env(environ)
    types = {f.name: f.type for f in fields(NodeConfig)}

    raw: dict[str, Any] = {}
    if config_path:
        path = Path(config_path).resolve()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"Config file must hold a JSON object: {path}")

    raw.update({k: v for k, v in (overrides or {}).items() if v is not None})
    for key, value in raw.items():
        if key in types:
            setattr(config, key, _coerce(key, str(types[key]), value))
    return config


def _coerce(key: str, field_type: str, value: Any) -> Any:
    """Convert a JSON value to a NodeConfig field type (given as a string)."""
    optional = field_type.endswith("| None")
    base = field_type.split("|")[0].strip()
    if value is None:
        if optional:
            return None
        raise ValueError(f"{key} must not be null")

    if base == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise ValueError(f"{key} must be true or false, got {value!r}")

    if base in ("int", "float") and isinstance(value, bool):
        raise ValueError(f"{key} must be a number, got {value!r}")
    cast = {"int": int, "float": float, "str": str}[base]
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be {base}, got {value!r}") from e
