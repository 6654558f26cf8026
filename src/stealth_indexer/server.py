"""HTTP query service for vault balances, invoices and cached relay packets."""

import asyncio
import logging
import re
from typing import Any, Awaitable, TypeVar

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .config import IndexerConfig
from .errors import (
    ConfigurationError,
    StealthIndexerError,
    TransportError,
    UpstreamError,
    ValidationError,
)
from .service import QueryBackend
from .utils.packet_cache import PacketCache
from .utils.slot_encoder import SLOT_MODULUS, StorageSlotEncoder

logger = logging.getLogger(__name__)

T = TypeVar("T")

_AMOUNT_RE = re.compile(r"0[xX][0-9a-fA-F]+|[0-9]+")

DISCONNECT_POLL_INTERVAL = 0.5
# Non-standard "client closed request" status; the client never sees it.
CLIENT_CLOSED_STATUS = 499


class ClientDisconnected(Exception):
    """The HTTP client went away while its query was still running."""


def parse_amount(value: str | None, label: str = "amount") -> int:
    """
    Parse a non-negative uint256 given as a decimal or 0x-prefixed hex string.

    Raises:
        ValidationError: If the value is missing, malformed, negative or too large
    """
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required")
    if text.startswith("-"):
        raise ValidationError(f"{label} must not be negative")
    if not _AMOUNT_RE.fullmatch(text):
        raise ValidationError(f"{label} must be a decimal or 0x-prefixed hex integer")
    amount = int(text, 16) if text[:2].lower() == "0x" else int(text, 10)
    if amount >= SLOT_MODULUS:
        raise ValidationError(f"{label} must fit in uint256")
    return amount


def _require_text(value: str | None, label: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


async def run_until_disconnect(request: Request, query: Awaitable[T]) -> T:
    """
    Await `query`, cancelling it if the client disconnects first.

    Raises:
        ClientDisconnected: If the client went away before the query finished
    """
    task = asyncio.ensure_future(query)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info(f"Client disconnected, cancelling {request.url.path}")
                raise ClientDisconnected(request.url.path)
    finally:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling
            except Exception as e:
                logger.debug(f"Cancelled query for {request.url.path} ended with {e}")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(config: IndexerConfig, backend: QueryBackend, cache: PacketCache) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Indexer configuration, echoed by /health
        backend: Answers vault queries (local service or remote indexer)
        cache: Relay packet cache served by /packets and /health

    Returns:
        FastAPI app ready to be served
    """
    app = FastAPI(title="Stealth Vault Indexer", version=__version__)
    app.state.config = config
    app.state.backend = backend
    app.state.cache = cache

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())[1:])
            messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        return _error(400, "; ".join(messages) or "Invalid request")

    @app.exception_handler(UpstreamError)
    async def handle_upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
        return _error(502, str(exc))

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error(f"{request.url.path}: {exc}")
        return _error(500, str(exc))

    @app.exception_handler(TransportError)
    async def handle_transport_error(request: Request, exc: TransportError) -> JSONResponse:
        logger.error(f"{request.url.path}: {exc}")
        return _error(500, str(exc))

    @app.exception_handler(StealthIndexerError)
    async def handle_indexer_error(request: Request, exc: StealthIndexerError) -> JSONResponse:
        logger.error(f"{request.url.path}: {exc}", exc_info=True)
        return _error(500, str(exc))

    @app.exception_handler(ClientDisconnected)
    async def handle_client_disconnected(request: Request, exc: ClientDisconnected) -> JSONResponse:
        return _error(CLIENT_CLOSED_STATUS, "Client disconnected")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return _error(500, "Internal server error")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        snapshot = cache.snapshot()
        relay = config.relay
        return {
            "ok": True,
            "chainId": str(config.vault.chain_id),
            "packetsCached": len(snapshot["packets"]),
            "receiptsCached": len(snapshot["receipts"]),
            "lastPacketHeight": snapshot["lastPacketHeight"],
            "lastReceiptHeight": snapshot["lastReceiptHeight"],
            "config": {
                "port": config.server.port,
                "vaultAddress": config.vault.vault_address,
                "upstream": config.server.upstream_url,
                "source": None if relay is None else {
                    "consensusStateId": relay.source.consensus_state_id,
                    "rpcUrl": relay.source.rpc_url,
                    "stateMachineId": relay.source.state_machine_id,
                    "host": relay.source.host,
                },
                "dest": {
                    "consensusStateId": relay.dest.consensus_state_id if relay else None,
                    "rpcUrl": config.vault.rpc_url,
                    "stateMachineId": relay.dest.state_machine_id if relay else None,
                    "host": relay.dest.host if relay else None,
                    "chainId": str(config.vault.chain_id),
                },
            },
        }

    @app.get("/packets")
    async def packets(limit: int = Query(50, ge=1, le=512)) -> dict[str, Any]:
        return {
            "packets": [record.to_dict() for record in cache.list_packets(limit)],
            "receipts": [record.to_dict() for record in cache.list_receipts(limit)],
            "lastPacketHeight": cache.last_packet_height,
            "lastReceiptHeight": cache.last_receipt_height,
        }

    @app.get("/stealth-balance")
    async def stealth_balance(
        request: Request,
        stealthId: str | None = None,
        assetId: str | None = None,
    ) -> dict[str, Any]:
        stealth_id = StorageSlotEncoder.parse_hex32(stealthId, "stealthId")
        asset_id = StorageSlotEncoder.parse_hex32(assetId, "assetId")
        result = await run_until_disconnect(request, backend.query_stealth_balance(stealth_id, asset_id))
        return result.to_dict()

    @app.get("/stealth-credit")
    async def stealth_credit(
        request: Request,
        stealthId: str | None = None,
        assetId: str | None = None,
        amount: str | None = None,
    ) -> dict[str, Any]:
        stealth_id = StorageSlotEncoder.parse_hex32(stealthId, "stealthId")
        asset_id = StorageSlotEncoder.parse_hex32(assetId, "assetId")
        requested = parse_amount(amount)
        result = await run_until_disconnect(
            request, backend.query_stealth_credit(stealth_id, asset_id, requested)
        )
        return result.to_dict()

    @app.get("/aggregated-stealth-credit")
    async def aggregated_stealth_credit(
        request: Request,
        stealthPublicId: str | None = None,
        assetId: str | None = None,
        amount: str | None = None,
    ) -> dict[str, Any]:
        public_id = _require_text(stealthPublicId, "stealthPublicId")
        asset_id = StorageSlotEncoder.parse_hex32(assetId, "assetId")
        requested = parse_amount(amount)
        result = await run_until_disconnect(
            request, backend.query_aggregated_credit(public_id, asset_id, requested)
        )
        return result.to_dict()

    @app.get("/payable-stealth-ids")
    async def payable_stealth_ids(
        request: Request,
        stealthPublicId: str | None = None,
        assetId: str | None = None,
        amount: str | None = None,
    ) -> dict[str, Any]:
        public_id = _require_text(stealthPublicId, "stealthPublicId")
        asset_id = StorageSlotEncoder.parse_hex32(assetId, "assetId")
        requested = parse_amount(amount)
        identifiers = await run_until_disconnect(
            request, backend.find_payable_identifiers(public_id, asset_id, requested)
        )
        total = sum(item.balance for item in identifiers)
        return {
            "identifiers": [item.to_dict() for item in identifiers],
            "total": str(total),
            "requestedAmount": str(requested),
            "covered": total >= requested,
        }

    @app.get("/invoice-status")
    async def invoice_status(request: Request, invoiceId: str | None = None) -> dict[str, Any]:
        invoice_id = StorageSlotEncoder.parse_hex32(invoiceId, "invoiceId")
        result = await run_until_disconnect(request, backend.query_invoice_status(invoice_id))
        return result.to_dict()

    return app
