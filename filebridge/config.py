"""
Global application configuration, read from the environment.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from filebridge.errors import HostNotFoundError

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

DEFAULT_RPC_TIMEOUT_MS = 30_000
DEFAULT_CHUNK_SIZE = 256 * 1024  # bytes per read/write during transfers
DEFAULT_MAX_CONCURRENT_TRANSFERS = 5
DEFAULT_MAX_CONCURRENT_PER_HOST = 3
DEFAULT_SPEED_SMOOTHING = 0.3  # weight of the newest sample in the moving average


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}: {raw!r}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid number for {name}: {raw!r}")
        return default


@dataclass
class Settings:
    rpc_timeout_ms: int = DEFAULT_RPC_TIMEOUT_MS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_concurrent_transfers: int = DEFAULT_MAX_CONCURRENT_TRANSFERS
    max_concurrent_per_host: int = DEFAULT_MAX_CONCURRENT_PER_HOST
    speed_smoothing: float = DEFAULT_SPEED_SMOOTHING
    bind_host: str = "127.0.0.1"
    bind_port: int = 8765
    hosts_file: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            rpc_timeout_ms=_env_int("FILEBRIDGE_RPC_TIMEOUT_MS", DEFAULT_RPC_TIMEOUT_MS),
            chunk_size=_env_int("FILEBRIDGE_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
            max_concurrent_transfers=_env_int("FILEBRIDGE_MAX_TRANSFERS", DEFAULT_MAX_CONCURRENT_TRANSFERS),
            max_concurrent_per_host=_env_int("FILEBRIDGE_MAX_TRANSFERS_PER_HOST", DEFAULT_MAX_CONCURRENT_PER_HOST),
            speed_smoothing=_env_float("FILEBRIDGE_SPEED_SMOOTHING", DEFAULT_SPEED_SMOOTHING),
            bind_host=os.getenv("FILEBRIDGE_HOST", "127.0.0.1"),
            bind_port=_env_int("FILEBRIDGE_PORT", 8765),
            hosts_file=os.getenv("FILEBRIDGE_HOSTS_FILE") or None,
            log_level=os.getenv("FILEBRIDGE_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO"):
    """Root logger setup for the service process"""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@dataclass
class SshHostConfig:
    """Connection parameters for one remote host (storage is external)"""
    id: str
    host: str
    port: int = 22
    username: str = ""
    password: str = field(default="", repr=False)
    key_file: Optional[str] = None


class HostDirectory:
    """Lookup of remote hosts by id.

    Credential and host storage belong to another component; this only holds
    what it was given, optionally seeded from a JSON file.
    """

    def __init__(self, hosts: Optional[Dict[str, SshHostConfig]] = None):
        self._hosts: Dict[str, SshHostConfig] = dict(hosts or {})

    @classmethod
    def from_file(cls, path: Optional[str]) -> "HostDirectory":
        if not path:
            return cls()
        if not os.path.exists(path):
            logger.warning(f"Hosts file not found: {path}")
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        hosts = {}
        for item in raw:
            try:
                config = SshHostConfig(
                    id=item["id"],
                    host=item["host"],
                    port=int(item.get("port", 22)),
                    username=item.get("username", ""),
                    password=item.get("password", ""),
                    key_file=item.get("key_file") or item.get("keyFile"),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid host entry {item!r}: {e}")
                continue
            hosts[config.id] = config
        logger.info(f"Loaded {len(hosts)} hosts from {path}")
        return cls(hosts)

    def add(self, config: SshHostConfig):
        self._hosts[config.id] = config

    def get(self, host_id: str) -> SshHostConfig:
        config = self._hosts.get(host_id)
        if config is None:
            raise HostNotFoundError(f"Host not found: {host_id}")
        return config
