"""
Devnet Configuration
====================

Environment-driven configuration for the devnet supervisor. Every field can
be overridden with a ``DEVNET_*`` environment variable; the CLI applies its
flags on top of the loaded values.

Port layout (node index ``i``, bootnode is ``0``):

    p2p listen   = DEVNET_FIBER_P2P_BASE   + i   (default 41716)
    rpc          = DEVNET_FIBER_RPC_BASE   + i   (default 21716)
    relay        = DEVNET_FIBER_RELAY_BASE + i   (default 10000)
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List


# =============================================================================
# Environment helpers
# =============================================================================

def _env_str(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key, str(default)).lower()
    return val in ("true", "1", "yes", "on")


def _env_command(key: str, default: str) -> List[str]:
    return shlex.split(os.getenv(key, default))


def _env_path(key: str, default: str) -> Path:
    return Path(os.getenv(key, default)).expanduser()


# =============================================================================
# Per-node configuration
# =============================================================================

@dataclass
class FiberNodeConfig:
    """Derived settings for one Fiber node (bootnode or peer)."""
    name: str
    index: int
    workdir: Path
    p2p_port: int
    rpc_port: int
    relay_port: int
    relay_host: str = "0.0.0.0"

    @property
    def config_path(self) -> Path:
        return self.workdir / "config.yml"

    @property
    def rpc_url(self) -> str:
        return f"http://127.0.0.1:{self.rpc_port}"

    @property
    def is_bootnode(self) -> bool:
        return self.index == 0

    def command(self, binary: str) -> List[str]:
        return [binary, "-c", str(self.config_path), "-d", str(self.workdir)]


# =============================================================================
# Top-level configuration
# =============================================================================

@dataclass
class DevnetConfig:
    """Dynamic configuration for the devnet supervisor."""

    # Logging
    log_level: str = field(default_factory=lambda: _env_str("DEVNET_LOG_LEVEL", "INFO"))
    log_format: str = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    log_dir: Path = field(default_factory=lambda: _env_path("DEVNET_LOG_DIR", "devnet-logs"))

    # Layout
    project_root: Path = field(default_factory=lambda: _env_path("DEVNET_ROOT", "."))

    # Readiness polling
    probe_interval: float = field(default_factory=lambda: _env_float("DEVNET_PROBE_INTERVAL", 1.0))

    # Chain node
    chain_command: List[str] = field(
        default_factory=lambda: _env_command("DEVNET_CHAIN_CMD", "ckb run -C ckb")
    )
    chain_rpc_url: str = field(
        default_factory=lambda: _env_str("DEVNET_CHAIN_RPC_URL", "http://127.0.0.1:8114")
    )
    chain_min_tip: int = field(default_factory=lambda: _env_int("DEVNET_CHAIN_MIN_TIP", 1))
    chain_timeout: float = field(default_factory=lambda: _env_float("DEVNET_CHAIN_TIMEOUT", 120.0))

    # Fund distribution (one-shot)
    fund_command: List[str] = field(
        default_factory=lambda: _env_command("DEVNET_FUND_CMD", "cargo run --release --quiet")
    )
    fund_timeout: float = field(default_factory=lambda: _env_float("DEVNET_FUND_TIMEOUT", 600.0))

    # Fiber nodes
    fiber_binary: str = field(default_factory=lambda: _env_str("DEVNET_FIBER_BIN", "fnn"))
    fiber_dir: Path = field(default_factory=lambda: _env_path("DEVNET_FIBER_DIR", "fiber"))
    peer_count: int = field(default_factory=lambda: _env_int("DEVNET_PEER_COUNT", 3))
    p2p_base_port: int = field(default_factory=lambda: _env_int("DEVNET_FIBER_P2P_BASE", 41716))
    rpc_base_port: int = field(default_factory=lambda: _env_int("DEVNET_FIBER_RPC_BASE", 21716))
    relay_base_port: int = field(default_factory=lambda: _env_int("DEVNET_FIBER_RELAY_BASE", 10000))
    relay_host: str = field(default_factory=lambda: _env_str("DEVNET_RELAY_HOST", "0.0.0.0"))
    fiber_key_password: str = field(
        default_factory=lambda: _env_str("DEVNET_FIBER_KEY_PASSWORD", "12345678")
    )
    fiber_rust_log: str = field(
        default_factory=lambda: _env_str("DEVNET_FIBER_RUST_LOG", "info,fnn::watchtower::actor=warn")
    )
    fiber_timeout: float = field(default_factory=lambda: _env_float("DEVNET_FIBER_TIMEOUT", 60.0))

    # Monitoring UI
    monitor_enabled: bool = field(default_factory=lambda: _env_bool("DEVNET_MONITOR_ENABLED", True))
    monitor_command: List[str] = field(
        default_factory=lambda: _env_command("DEVNET_MONITOR_CMD", "npm run start --prefix monitor")
    )
    monitor_port: int = field(default_factory=lambda: _env_int("DEVNET_MONITOR_PORT", 3000))
    monitor_timeout: float = field(default_factory=lambda: _env_float("DEVNET_MONITOR_TIMEOUT", 90.0))

    # Shutdown
    grace_period: float = field(default_factory=lambda: _env_float("DEVNET_GRACE_PERIOD", 10.0))
    force_timeout: float = field(default_factory=lambda: _env_float("DEVNET_FORCE_TIMEOUT", 3.0))
    exit_on_failure: bool = field(default_factory=lambda: _env_bool("DEVNET_EXIT_ON_FAILURE", False))

    def resolve(self, path: Path) -> Path:
        """Resolve ``path`` against the project root unless it is absolute."""
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()

    def fiber_nodes(self) -> List[FiberNodeConfig]:
        """Bootnode first, then ``peer_count`` regular peers."""
        names = ["bootnode"] + [f"node{i}" for i in range(1, self.peer_count + 1)]
        fiber_root = self.resolve(self.fiber_dir)
        return [
            FiberNodeConfig(
                name=name,
                index=index,
                workdir=fiber_root / name,
                p2p_port=self.p2p_base_port + index,
                rpc_port=self.rpc_base_port + index,
                relay_port=self.relay_base_port + index,
                relay_host=self.relay_host,
            )
            for index, name in enumerate(names)
        ]

    def fiber_env(self) -> Dict[str, str]:
        """Environment shared by every Fiber node process."""
        return {
            "RUST_LOG": self.fiber_rust_log,
            "FIBER_SECRET_KEY_PASSWORD": self.fiber_key_password,
        }

    def validate(self) -> List[str]:
        """Return a list of human-readable configuration problems."""
        problems: List[str] = []
        if self.peer_count < 0:
            problems.append("peer count must not be negative")
        if self.probe_interval <= 0:
            problems.append("probe interval must be positive")
        if self.grace_period < 0:
            problems.append("grace period must not be negative")
        for label, command in (
            ("chain", self.chain_command),
            ("fund", self.fund_command),
            ("monitor", self.monitor_command),
        ):
            if not command:
                problems.append(f"{label} command is empty")
        ports = [self.monitor_port] if self.monitor_enabled else []
        for node in self.fiber_nodes():
            ports.extend((node.p2p_port, node.rpc_port, node.relay_port))
        if len(set(ports)) != len(ports):
            problems.append("fiber/monitor port ranges overlap")
        return problems


def load_config() -> DevnetConfig:
    """Load configuration from the current environment."""
    return DevnetConfig()
