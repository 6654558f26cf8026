#!/usr/bin/env python3
"""Entry point for the Stealth Vault Indexer service.

Loads configuration from the environment (and optional .env files), then
serves vault queries over HTTP and caches Hyperbridge relay packets until
interrupted.
"""

import argparse
import asyncio
import logging
import os
import sys


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from stealth_indexer.indexer import StealthIndexer


async def main() -> None:
    """Main entry point for the Stealth Vault Indexer service.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Stealth Vault Indexer - query StealthVault storage and cache Hyperbridge packets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  STEALTH_VAULT_ADDRESS_PASSET   - StealthVault contract address (required)
  PASSET_RPC_URL                 - Vault chain RPC endpoint
  HYPERBRIDGE_DEST_CHAIN_ID      - Vault chain ID (default: 420420422)
  HYPERBRIDGE_INDEXER_PORT       - HTTP port (default: 4545)
  HYPERBRIDGE_INDEXER_CACHE      - Packet cache file (default: .cache/state.json)
  HYPERBRIDGE_QUERY_URL          - Hyperbridge GraphQL endpoint (unset: relay disabled)
  HYPERBRIDGE_INDEXER_URL        - Upstream indexer to forward queries to (gateway mode)
  LOG_LEVEL                      - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Extra .env file loaded before .env.local and .env"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Stealth Vault Indexer Starting ===")

    if args.env_file:
        os.environ["HYPERBRIDGE_INDEXER_ENV"] = args.env_file

    logger.info("Loading configuration from environment...")

    try:
        indexer: StealthIndexer = StealthIndexer.from_env()
        logger.info("StealthIndexer instance created, starting main loop...")
        await indexer.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - STEALTH_VAULT_ADDRESS_PASSET: StealthVault contract address")
        logger.error("  - PASSET_RPC_URL: Vault chain RPC endpoint")
        logger.error("  - HYPERBRIDGE_SOURCE_* / HYPERBRIDGE_DEST_*: Required when HYPERBRIDGE_QUERY_URL is set")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
