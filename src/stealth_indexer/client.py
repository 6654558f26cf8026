"""
Clients for a remote stealth indexer.

`IndexerClient` speaks the indexer's HTTP API and turns its JSON back into
result models, so it can stand in for a local VaultQueryService anywhere a
QueryBackend is expected. `StealthQueryClient` chooses between the two per
query.
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

import httpx
from web3 import Web3

from .errors import (
    ConfigurationError,
    DecodeError,
    RequestTimeoutError,
    TransportError,
    UpstreamError,
)
from .models import (
    AggregatedCreditResult,
    BalanceResult,
    CreditResult,
    InvoiceStatusResult,
    PayableIdentifier,
)
from .service import QueryBackend
from .utils.slot_encoder import StorageSlotEncoder

logger = logging.getLogger(__name__)

CLIENT_HEADERS = {"x-hyperbridge-client": "stealth-vault-indexer"}

T = TypeVar("T")


def _field(payload: Mapping[str, Any], key: str, parse: Callable[[Any], T]) -> T:
    try:
        return parse(payload[key])
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Indexer response has a missing or invalid {key!r} field") from e


def _hex32(label: str) -> Callable[[Any], bytes]:
    return lambda value: StorageSlotEncoder.parse_hex32(value, label)


def _decimal(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not an integer")
    return int(str(value), 10)


def _bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected a boolean, got {type(value).__name__}")
    return value


class IndexerClient:
    """HTTP client for a running stealth indexer."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 7.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Indexer base URL, e.g. http://localhost:4545
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        if not base_url:
            raise ConfigurationError("HYPERBRIDGE_INDEXER_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _get(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, headers=CLIENT_HEADERS
            ) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Indexer request {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Indexer request {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            message = payload.get("error") if isinstance(payload, dict) else None
            logger.warning(f"Indexer {path} answered {response.status_code}: {message}")
            raise UpstreamError(
                message or f"Indexer request {path} failed with status {response.status_code}",
                response.status_code,
            )

        if not isinstance(payload, dict):
            raise DecodeError(f"Indexer response for {path} is not a JSON object")
        return payload

    @staticmethod
    def _balance(payload: Mapping[str, Any]) -> BalanceResult:
        return BalanceResult(
            chain_id=_field(payload, "chainId", _decimal),
            vault_address=_field(payload, "vaultAddress", Web3.to_checksum_address),
            stealth_id=_field(payload, "stealthId", _hex32("stealthId")),
            asset_id=_field(payload, "assetId", _hex32("assetId")),
            slot=_field(payload, "slot", _hex32("slot")),
            raw=_field(payload, "raw", _decimal),
        )

    async def query_stealth_balance(self, stealth_id: bytes, asset_id: bytes) -> BalanceResult:
        payload = await self._get(
            "/stealth-balance",
            {"stealthId": Web3.to_hex(stealth_id), "assetId": Web3.to_hex(asset_id)},
        )
        return self._balance(payload)

    async def query_stealth_credit(self, stealth_id: bytes, asset_id: bytes, amount: int) -> CreditResult:
        payload = await self._get(
            "/stealth-credit",
            {
                "stealthId": Web3.to_hex(stealth_id),
                "assetId": Web3.to_hex(asset_id),
                "amount": str(amount),
            },
        )
        return CreditResult(
            balance=self._balance(payload),
            requested_amount=_field(payload, "requestedAmount", _decimal),
        )

    async def query_aggregated_credit(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> AggregatedCreditResult:
        payload = await self._get(
            "/aggregated-stealth-credit",
            {
                "stealthPublicId": stealth_public_id,
                "assetId": Web3.to_hex(asset_id),
                "amount": str(amount),
            },
        )
        parse_id = _hex32("stealthIds")
        return AggregatedCreditResult(
            chain_id=_field(payload, "chainId", _decimal),
            vault_address=_field(payload, "vaultAddress", Web3.to_checksum_address),
            receiver_tag=_field(payload, "stealthId", _hex32("stealthId")),
            asset_id=_field(payload, "assetId", _hex32("assetId")),
            raw=_field(payload, "raw", _decimal),
            requested_amount=_field(payload, "requestedAmount", _decimal),
            stealth_ids=_field(
                {"stealthIds": [], **payload}, "stealthIds", lambda items: tuple(map(parse_id, items))
            ),
        )

    async def find_payable_identifiers(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> List[PayableIdentifier]:
        payload = await self._get(
            "/payable-stealth-ids",
            {
                "stealthPublicId": stealth_public_id,
                "assetId": Web3.to_hex(asset_id),
                "amount": str(amount),
            },
        )
        identifiers = _field(payload, "identifiers", list)
        return [
            PayableIdentifier(
                stealth_id=_field(item, "stealthId", _hex32("stealthId")),
                balance=_field(item, "balance", _decimal),
            )
            for item in identifiers
        ]

    async def query_invoice_status(self, invoice_id: bytes) -> InvoiceStatusResult:
        payload = await self._get("/invoice-status", {"invoiceId": Web3.to_hex(invoice_id)})
        result = InvoiceStatusResult(
            chain_id=_field(payload, "chainId", _decimal),
            vault_address=_field(payload, "vaultAddress", Web3.to_checksum_address),
            invoice_id=_field(payload, "invoiceId", _hex32("invoiceId")),
            slot=_field(payload, "slot", _hex32("slot")),
            raw=_field(payload, "raw", _decimal),
        )
        if "paid" in payload and _field(payload, "paid", _bool) != result.paid:
            raise DecodeError("Indexer invoice status disagrees with its raw storage word")
        return result


class StealthQueryClient:
    """
    Routes queries to a remote indexer when one is configured, otherwise to a
    local backend. Aggregated credit is only answered by the indexer.
    """

    def __init__(self, indexer: Optional[IndexerClient] = None, local: Optional[QueryBackend] = None):
        if indexer is None and local is None:
            raise ConfigurationError(
                "Configure HYPERBRIDGE_INDEXER_URL or provide a local query backend"
            )
        self.indexer = indexer
        self.local = local

    @property
    def backend(self) -> QueryBackend:
        return self.indexer if self.indexer is not None else self.local

    async def query_stealth_balance(self, stealth_id: bytes, asset_id: bytes) -> BalanceResult:
        return await self.backend.query_stealth_balance(stealth_id, asset_id)

    async def query_stealth_credit(self, stealth_id: bytes, asset_id: bytes, amount: int) -> CreditResult:
        return await self.backend.query_stealth_credit(stealth_id, asset_id, amount)

    async def query_aggregated_credit(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> AggregatedCreditResult:
        if self.indexer is None:
            raise ConfigurationError(
                "HYPERBRIDGE_INDEXER_URL is not configured; aggregated stealth credit requires the indexer"
            )
        return await self.indexer.query_aggregated_credit(stealth_public_id, asset_id, amount)

    async def find_payable_identifiers(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> List[PayableIdentifier]:
        return await self.backend.find_payable_identifiers(stealth_public_id, asset_id, amount)

    async def query_invoice_status(self, invoice_id: bytes) -> InvoiceStatusResult:
        return await self.backend.query_invoice_status(invoice_id)
