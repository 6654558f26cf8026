"""
Stealth indexer service.

This module wires the vault query components, the relay packet cache and the
HTTP server together and runs them until shutdown.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import uvicorn

from .aggregator import BalanceAggregator
from .client import IndexerClient, StealthQueryClient
from .config import IndexerConfig
from .discovery import PaymentDiscovery
from .models import PacketRecord
from .relay_client import HyperbridgeRelayClient, RelayEventSource
from .server import create_app
from .service import QueryBackend, VaultQueryService
from .utils.packet_cache import PacketCache
from .utils.storage_reader import StorageReader

logger = logging.getLogger(__name__)


class StealthIndexer:
    """
    Owns every component and their lifecycle.

    Vault queries go to the chain directly, or to an upstream indexer when
    one is configured (gateway mode). Relay packets are cached on disk when a
    relay source is available.
    """

    STATUS_LOG_INTERVAL = 30  # seconds
    SERVER_SHUTDOWN_TIMEOUT = 5.0  # seconds

    def __init__(self, config: IndexerConfig, relay_source: Optional[RelayEventSource] = None):
        """
        Initialize the stealth indexer.

        Args:
            config: Indexer configuration
            relay_source: Relay event source to use instead of the one built from config
        """
        self.config = config
        self.running = False

        self.reader = StorageReader(
            rpc_url=config.vault.rpc_url,
            request_timeout=config.vault.request_timeout,
        )
        self.discovery = PaymentDiscovery(
            w3=self.reader.w3,
            vault_address=config.vault.vault_address,
            lookback_blocks=config.discovery.lookback_blocks,
            min_chunk_blocks=config.discovery.min_chunk_blocks,
        )
        self.aggregator = BalanceAggregator(self.discovery, self.reader, config.vault.vault_address)
        self.local_service = VaultQueryService(
            chain_id=config.vault.chain_id,
            vault_address=config.vault.vault_address,
            reader=self.reader,
            aggregator=self.aggregator,
        )
        self.backend = self._init_backend()

        self.cache = PacketCache(config.cache.cache_file, config.cache.max_entries)
        self.relay_source = relay_source
        self.app = create_app(config, self.backend, self.cache)
        self.server: Optional[uvicorn.Server] = None

        self.shutdown_event = asyncio.Event()

    def _init_backend(self) -> QueryBackend:
        upstream_url = self.config.server.upstream_url
        if not upstream_url:
            logger.info("Answering vault queries from chain storage")
            return self.local_service

        logger.info(f"Gateway mode: forwarding vault queries to {upstream_url}")
        return StealthQueryClient(
            indexer=IndexerClient(upstream_url, timeout=self.config.server.upstream_timeout),
            local=self.local_service,
        )

    def _init_relay_source(self) -> Optional[RelayEventSource]:
        if self.relay_source is not None:
            return self.relay_source
        if self.config.relay is None:
            logger.info("HYPERBRIDGE_QUERY_URL not set, relay packet ingestion disabled")
            return None
        return HyperbridgeRelayClient(
            self.config.relay,
            start_heights={
                "packet": self.cache.last_packet_height,
                "receipt": self.cache.last_receipt_height,
            },
        )

    @classmethod
    def from_env(cls) -> "StealthIndexer":
        """
        Create a StealthIndexer instance from environment variables.

        Raises:
            ConfigurationError: If required environment variables are missing
        """
        config = IndexerConfig.from_env()
        config.log_config()
        return cls(config)

    async def _ingest(self, stream: AsyncIterator[Any], kind: str) -> None:
        """Copy one relay stream into the packet cache."""
        push = self.cache.push_packet if kind == "packet" else self.cache.push_receipt
        async for payload in stream:
            record = PacketRecord.from_relay(payload)
            push(record)
            logger.debug(f"Cached relay {kind} {record.id} at height {record.height}")

    async def _log_relay_errors(self, stream: AsyncIterator[Any]) -> None:
        async for error in stream:
            logger.error(f"Hyperbridge relay error: {error}")

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            stats = self.cache.get_stats()
            logger.info(
                f"Status: {stats['packets_cached']} packets, "
                f"{stats['receipts_cached']} receipts cached "
                f"(heights {stats['last_packet_height']}/{stats['last_receipt_height']}), "
                f"{stats['writes_completed']} cache writes"
            )

    async def _serve(self) -> None:
        self.server = uvicorn.Server(
            uvicorn.Config(
                self.app,
                host=self.config.server.host,
                port=self.config.server.port,
                log_config=None,
            )
        )
        await self.server.serve()

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed or finished."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                else:
                    logger.warning(f"{name} task finished")
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task], relay: Optional[RelayEventSource]) -> None:
        """Stop the server and relay, cancel tasks and flush the cache."""
        server_task = tasks.get("server")
        if self.server is not None and server_task is not None and not server_task.done():
            self.server.should_exit = True
            await asyncio.wait({server_task}, timeout=self.SERVER_SHUTDOWN_TIMEOUT)

        if relay is not None:
            try:
                await relay.stop()
            except Exception as e:
                logger.error(f"Error stopping relay source: {e}")

        for name, task in tasks.items():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        await self.cache.stop()

    async def run(self) -> None:
        """Main loop of the indexer service."""
        self.running = True
        logger.info("Stealth indexer starting...")

        self.cache.hydrate_from_disk()
        self.cache.start()

        tasks: dict[str, asyncio.Task[Any]] = {}
        relay: Optional[RelayEventSource] = None
        try:
            relay = self._init_relay_source()
            if relay is not None:
                # Subscriptions must exist before start(); emitters may publish from inside it
                tasks["packets"] = asyncio.create_task(self._ingest(relay.subscribe("packet"), "packet"))
                tasks["receipts"] = asyncio.create_task(self._ingest(relay.subscribe("receipt"), "receipt"))
                tasks["relay_errors"] = asyncio.create_task(self._log_relay_errors(relay.subscribe("error")))
                await relay.start()
                logger.info("Hyperbridge relay started")

            tasks["server"] = asyncio.create_task(self._serve())
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            logger.info(f"Serving queries on {self.config.server.host}:{self.config.server.port}")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    logger.error("Critical task stopped, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks, relay)
            logger.info("Stealth indexer stopped")

    def stop(self) -> None:
        """Stop the indexer service."""
        self.running = False
        self.shutdown_event.set()
