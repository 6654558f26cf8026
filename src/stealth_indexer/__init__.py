"""
Stealth Vault Indexer package.

Storage-proof query service for StealthVault balances and invoices, with a
cache of Hyperbridge relay packets.
"""

__version__ = "0.1.0"

from .client import IndexerClient, StealthQueryClient
from .config import IndexerConfig
from .errors import (
    ConfigurationError,
    DecodeError,
    RequestTimeoutError,
    StealthIndexerError,
    TransportError,
    UpstreamError,
    ValidationError,
)
from .indexer import StealthIndexer
from .service import VaultQueryService

__all__ = [
    "IndexerConfig",
    "StealthIndexer",
    "VaultQueryService",
    "IndexerClient",
    "StealthQueryClient",
    "StealthIndexerError",
    "ValidationError",
    "ConfigurationError",
    "TransportError",
    "RequestTimeoutError",
    "DecodeError",
    "UpstreamError",
]
