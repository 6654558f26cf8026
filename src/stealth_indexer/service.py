"""
Vault query service.

Answers balance, credit, aggregated-credit, payable-identifier and invoice
questions for the StealthVault by reading its storage directly from the
vault chain's RPC.
"""

import logging
from typing import List, Protocol

from web3 import Web3

from .aggregator import BalanceAggregator
from .models import (
    AggregatedCreditResult,
    BalanceResult,
    CreditResult,
    InvoiceStatusResult,
    PayableIdentifier,
)
from .utils.slot_encoder import StorageSlotEncoder
from .utils.storage_reader import StorageReader

logger = logging.getLogger(__name__)


class QueryBackend(Protocol):
    """Query surface shared by the local service and the remote indexer client."""

    async def query_stealth_balance(self, stealth_id: bytes, asset_id: bytes) -> BalanceResult: ...

    async def query_stealth_credit(self, stealth_id: bytes, asset_id: bytes, amount: int) -> CreditResult: ...

    async def query_aggregated_credit(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> AggregatedCreditResult: ...

    async def find_payable_identifiers(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> List[PayableIdentifier]: ...

    async def query_invoice_status(self, invoice_id: bytes) -> InvoiceStatusResult: ...


class VaultQueryService:
    """Direct-RPC implementation of every vault query."""

    def __init__(
        self,
        chain_id: int,
        vault_address: str,
        reader: StorageReader,
        aggregator: BalanceAggregator,
    ):
        """
        Initialize the service.

        Args:
            chain_id: Chain ID of the vault chain, echoed in results
            vault_address: Address of the StealthVault contract
            reader: StorageReader for the vault chain
            aggregator: BalanceAggregator bound to the same vault
        """
        self.chain_id = chain_id
        self.vault_address = Web3.to_checksum_address(vault_address)
        self.reader = reader
        self.aggregator = aggregator

    async def query_stealth_balance(self, stealth_id: bytes, asset_id: bytes) -> BalanceResult:
        slot = StorageSlotEncoder.balances_slot(stealth_id, asset_id)
        raw = await self.reader.read_int(self.vault_address, slot)
        return BalanceResult(
            chain_id=self.chain_id,
            vault_address=self.vault_address,
            stealth_id=stealth_id,
            asset_id=asset_id,
            slot=slot,
            raw=raw,
        )

    async def query_stealth_credit(self, stealth_id: bytes, asset_id: bytes, amount: int) -> CreditResult:
        balance = await self.query_stealth_balance(stealth_id, asset_id)
        return CreditResult(balance=balance, requested_amount=amount)

    async def query_aggregated_credit(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> AggregatedCreditResult:
        """
        Aggregate the recipient's current balances and compare against `amount`.

        Completes fully or raises; there is no partial sum.
        """
        receiver_tag = StorageSlotEncoder.receiver_tag(stealth_public_id)
        balances = await self.aggregator.current_balances(stealth_public_id, asset_id)
        return AggregatedCreditResult(
            chain_id=self.chain_id,
            vault_address=self.vault_address,
            receiver_tag=receiver_tag,
            asset_id=asset_id,
            raw=sum(item.balance for item in balances),
            requested_amount=amount,
            stealth_ids=tuple(item.stealth_id for item in balances),
        )

    async def find_payable_identifiers(
        self, stealth_public_id: str, asset_id: bytes, amount: int
    ) -> List[PayableIdentifier]:
        return await self.aggregator.find_payable_identifiers(stealth_public_id, asset_id, amount)

    async def query_invoice_status(self, invoice_id: bytes) -> InvoiceStatusResult:
        slot = StorageSlotEncoder.invoice_paid_slot(invoice_id)
        raw = await self.reader.read_int(self.vault_address, slot)
        logger.debug(f"Invoice {Web3.to_hex(invoice_id)[:10]}... paid word: {raw}")
        return InvoiceStatusResult(
            chain_id=self.chain_id,
            vault_address=self.vault_address,
            invoice_id=invoice_id,
            slot=slot,
            raw=raw,
        )
