"""Configuration management for the stealth indexer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables (optionally seeded from
.env files) with sensible defaults where appropriate. One IndexerConfig is
built at process start and handed to every component that needs it.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv
from web3 import Web3

from .errors import ConfigurationError

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_CACHE_FILE = ".cache/state.json"
DEFAULT_VAULT_RPC_URL = "https://testnet-passet-hub-eth-rpc.polkadot.io"
DEFAULT_SOURCE_RPC_URL = "https://paseo.rpc.amforc.com"
DEFAULT_VAULT_CHAIN_ID = 420420422


def _require_url(url: str, setting: str, schemes: tuple[str, ...] = ("http", "https")) -> None:
    if not url:
        raise ConfigurationError(f"{setting} is required")
    parsed = urlparse(url)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ConfigurationError(
            f"Invalid {setting}: {url}. Expected a {' or '.join(schemes)} URL"
        )


def _checksum(address: str, setting: str) -> str:
    if not address:
        raise ConfigurationError(f"{setting} is required")
    if not Web3.is_address(address):
        raise ConfigurationError(f"Invalid {setting}: {address}")
    return Web3.to_checksum_address(address)


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name, "")
    if value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


@dataclass(frozen=True, slots=True)
class VaultChainConfig:
    """Configuration for the chain hosting the StealthVault.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint of the vault chain
        vault_address: Checksummed StealthVault address
        chain_id: Chain ID echoed in query results
        request_timeout: Transport timeout for RPC calls, in seconds
    """

    rpc_url: str
    vault_address: str
    chain_id: int = DEFAULT_VAULT_CHAIN_ID
    request_timeout: float = 20.0

    def __post_init__(self) -> None:
        """Validate vault chain configuration."""
        _require_url(self.rpc_url, "PASSET_RPC_URL")
        object.__setattr__(
            self, "vault_address", _checksum(self.vault_address, "STEALTH_VAULT_ADDRESS_PASSET")
        )
        if self.chain_id <= 0:
            raise ConfigurationError(f"Chain ID must be positive, got {self.chain_id}")
        if self.request_timeout <= 0:
            raise ConfigurationError(f"RPC request timeout must be positive, got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class StateMachineConfig:
    """One side of the Hyperbridge route.

    Attributes:
        consensus_state_id: Consensus state identifier (e.g. PASEO0)
        state_machine_id: State machine identifier (e.g. SUBSTRATE-1000)
        host: 0x-prefixed ISMP host contract address
        rpc_url: RPC endpoint of this side
    """

    consensus_state_id: str
    state_machine_id: str
    host: str
    rpc_url: str
    label: str = "SOURCE"

    def __post_init__(self) -> None:
        prefix = f"HYPERBRIDGE_{self.label}"
        if not self.consensus_state_id:
            raise ConfigurationError(f"Provide {prefix}_CONSENSUS_STATE_ID")
        if not self.state_machine_id:
            raise ConfigurationError(f"Provide {prefix}_STATE_MACHINE_ID")
        object.__setattr__(self, "host", _checksum(self.host, f"{prefix}_HOST"))
        _require_url(self.rpc_url, f"{self.label} RPC URL", ("http", "https", "ws", "wss"))


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Configuration for the Hyperbridge relay subscription."""

    query_url: str
    source: StateMachineConfig
    dest: StateMachineConfig
    poll_interval_ms: int = 1500

    def __post_init__(self) -> None:
        _require_url(self.query_url, "HYPERBRIDGE_QUERY_URL")
        if self.poll_interval_ms <= 0:
            raise ConfigurationError(
                f"HYPERBRIDGE_INDEXER_POLL_INTERVAL_MS must be positive, got {self.poll_interval_ms}"
            )

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000


@dataclass(frozen=True, slots=True)
class DiscoveryConfig:
    """Configuration for StealthPayment event discovery."""

    lookback_blocks: int = 10_000
    min_chunk_blocks: int = 500

    def __post_init__(self) -> None:
        if self.lookback_blocks <= 0:
            raise ConfigurationError(f"Lookback blocks must be positive, got {self.lookback_blocks}")
        if self.min_chunk_blocks <= 0:
            raise ConfigurationError(f"Minimum chunk size must be positive, got {self.min_chunk_blocks}")


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Configuration for the relay packet cache."""

    cache_file: Path = Path(DEFAULT_CACHE_FILE)
    max_entries: int = 256

    MAX_ENTRIES_LIMIT: ClassVar[int] = 2000

    def __post_init__(self) -> None:
        if not 0 < self.max_entries <= self.MAX_ENTRIES_LIMIT:
            raise ConfigurationError(
                f"HYPERBRIDGE_INDEXER_MAX_EVENTS must be between 1 and "
                f"{self.MAX_ENTRIES_LIMIT}, got {self.max_entries}"
            )


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Configuration for the HTTP query service.

    Attributes:
        host: Bind address
        port: HTTP port
        upstream_url: Remote indexer to forward queries to (gateway mode)
        upstream_timeout: Timeout for upstream calls, in seconds
    """

    host: str = "0.0.0.0"
    port: int = 4545
    upstream_url: str | None = None
    upstream_timeout: float = 7.0

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"HYPERBRIDGE_INDEXER_PORT out of range: {self.port}")
        if self.upstream_url:
            _require_url(self.upstream_url, "HYPERBRIDGE_INDEXER_URL")
            object.__setattr__(self, "upstream_url", self.upstream_url.rstrip("/"))
        if self.upstream_timeout <= 0:
            raise ConfigurationError(f"Upstream timeout must be positive, got {self.upstream_timeout}")


@dataclass(frozen=True, slots=True)
class IndexerConfig:
    """Main configuration for the stealth indexer.

    Attributes:
        vault: Vault chain and contract settings
        cache: Relay packet cache settings
        server: HTTP service settings
        discovery: Event discovery settings
        relay: Hyperbridge relay settings, None when packet ingestion is disabled
        log_level: Logging level name
    """

    vault: VaultChainConfig
    cache: CacheConfig = field(default_factory=CacheConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    relay: RelayConfig | None = None
    log_level: str = "INFO"

    ENV_FILES: ClassVar[tuple[str, ...]] = (".env.local", ".env")

    @staticmethod
    def load_env_files() -> None:
        """Seed os.environ from .env files without overriding real variables.

        HYPERBRIDGE_INDEXER_ENV names an extra file that takes precedence over
        .env.local, which in turn takes precedence over .env.
        """
        candidates = [os.environ.get("HYPERBRIDGE_INDEXER_ENV"), *IndexerConfig.ENV_FILES]
        for candidate in filter(None, candidates):
            path = Path(candidate)
            if not path.is_absolute():
                path = Path.cwd() / path
            if path.is_file():
                load_dotenv(path, override=False)
                logger.debug(f"Loaded environment from {path}")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "IndexerConfig":
        """Load configuration from environment variables.

        Args:
            env: Mapping to read instead of os.environ (mainly for tests)

        Returns:
            IndexerConfig instance with loaded values

        Raises:
            ConfigurationError: If required variables are missing or invalid
        """
        if env is None:
            cls.load_env_files()
            env = os.environ

        vault_address = env.get("STEALTH_VAULT_ADDRESS_PASSET", "")
        if not vault_address:
            raise ConfigurationError(
                "STEALTH_VAULT_ADDRESS_PASSET environment variable is required. "
                "This should be the StealthVault contract address on the vault chain."
            )

        timeout_raw = env.get("RPC_REQUEST_TIMEOUT", "")
        try:
            request_timeout = float(timeout_raw) if timeout_raw else 20.0
        except ValueError:
            raise ConfigurationError(f"RPC_REQUEST_TIMEOUT must be a number, got {timeout_raw!r}") from None

        vault_rpc_url = env.get("PASSET_RPC_URL") or DEFAULT_VAULT_RPC_URL
        vault = VaultChainConfig(
            rpc_url=vault_rpc_url,
            vault_address=vault_address,
            chain_id=_int_env(env, "HYPERBRIDGE_DEST_CHAIN_ID", DEFAULT_VAULT_CHAIN_ID),
            request_timeout=request_timeout,
        )

        cache_path = Path(env.get("HYPERBRIDGE_INDEXER_CACHE") or DEFAULT_CACHE_FILE)
        if not cache_path.is_absolute():
            cache_path = Path.cwd() / cache_path
        cache = CacheConfig(
            cache_file=cache_path,
            max_entries=_int_env(env, "HYPERBRIDGE_INDEXER_MAX_EVENTS", 256),
        )

        server = ServerConfig(
            host=env.get("HYPERBRIDGE_INDEXER_HOST") or "0.0.0.0",
            port=_int_env(env, "HYPERBRIDGE_INDEXER_PORT", 4545),
            upstream_url=env.get("HYPERBRIDGE_INDEXER_URL") or None,
            upstream_timeout=_int_env(env, "HYPERBRIDGE_INDEXER_TIMEOUT_MS", 7000) / 1000,
        )

        discovery = DiscoveryConfig(
            lookback_blocks=_int_env(env, "DISCOVERY_LOOKBACK_BLOCKS", 10_000),
            min_chunk_blocks=_int_env(env, "DISCOVERY_MIN_CHUNK_BLOCKS", 500),
        )

        relay = None
        query_url = env.get("HYPERBRIDGE_QUERY_URL", "")
        if query_url:
            relay = RelayConfig(
                query_url=query_url,
                source=StateMachineConfig(
                    consensus_state_id=env.get("HYPERBRIDGE_SOURCE_CONSENSUS_STATE_ID", ""),
                    state_machine_id=env.get("HYPERBRIDGE_SOURCE_STATE_MACHINE_ID", ""),
                    host=env.get("HYPERBRIDGE_SOURCE_HOST", ""),
                    rpc_url=env.get("PASEO_RPC_URL") or DEFAULT_SOURCE_RPC_URL,
                    label="SOURCE",
                ),
                dest=StateMachineConfig(
                    consensus_state_id=env.get("HYPERBRIDGE_DEST_CONSENSUS_STATE_ID", ""),
                    state_machine_id=env.get("HYPERBRIDGE_DEST_STATE_MACHINE_ID", ""),
                    host=env.get("HYPERBRIDGE_DEST_HOST", ""),
                    rpc_url=vault_rpc_url,
                    label="DEST",
                ),
                poll_interval_ms=_int_env(env, "HYPERBRIDGE_INDEXER_POLL_INTERVAL_MS", 1500),
            )

        return cls(
            vault=vault,
            cache=cache,
            server=server,
            discovery=discovery,
            relay=relay,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Stealth Indexer Configuration")
        logger.info("=" * 60)

        logger.info("Vault Chain:")
        logger.info(f"  RPC URL: {self.vault.rpc_url}")
        logger.info(f"  Chain ID: {self.vault.chain_id}")
        logger.info(f"  Vault: {self.vault.vault_address}")
        logger.info(f"  Request Timeout: {self.vault.request_timeout} seconds")

        logger.info("Discovery Settings:")
        logger.info(f"  Lookback Blocks: {self.discovery.lookback_blocks}")
        logger.info(f"  Min Chunk Blocks: {self.discovery.min_chunk_blocks}")

        logger.info("Packet Cache:")
        logger.info(f"  File: {self.cache.cache_file}")
        logger.info(f"  Max Entries: {self.cache.max_entries}")

        logger.info("HTTP Server:")
        logger.info(f"  Listen: {self.server.host}:{self.server.port}")
        if self.server.upstream_url:
            logger.info(f"  Upstream Indexer: {self.server.upstream_url} (GATEWAY MODE)")
            logger.info(f"  Upstream Timeout: {self.server.upstream_timeout} seconds")

        if self.relay:
            logger.info("Hyperbridge Relay:")
            logger.info(f"  Query URL: {self.relay.query_url}")
            logger.info(f"  Source: {self.relay.source.state_machine_id} ({self.relay.source.consensus_state_id})")
            logger.info(f"  Dest: {self.relay.dest.state_machine_id} ({self.relay.dest.consensus_state_id})")
            logger.info(f"  Poll Interval: {self.relay.poll_interval_ms} ms")
        else:
            logger.info("Hyperbridge Relay: [DISABLED]")

        logger.info("=" * 60)
