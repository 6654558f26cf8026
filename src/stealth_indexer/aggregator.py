"""
Balance aggregation across every stealthId tagged for one recipient.

Event logs are an append-only history: they say a payment happened, not how
much of it is left. Aggregation therefore discovers identifiers from the logs
and then re-reads each identifier's current balance from storage.
"""

import asyncio
import logging
from typing import List, Optional

from web3 import Web3

from .discovery import PaymentDiscovery
from .models import DiscoveredPayment, PayableIdentifier
from .utils.slot_encoder import StorageSlotEncoder
from .utils.storage_reader import StorageReader

logger = logging.getLogger(__name__)


class BalanceAggregator:
    """Combines payment discovery with per-identifier storage reads."""

    def __init__(self, discovery: PaymentDiscovery, reader: StorageReader, vault_address: str):
        """
        Initialize the aggregator.

        Args:
            discovery: PaymentDiscovery bound to the vault
            reader: StorageReader for the vault chain
            vault_address: Address of the StealthVault contract
        """
        self.discovery = discovery
        self.reader = reader
        self.vault_address = Web3.to_checksum_address(vault_address)

    @staticmethod
    def unique_stealth_ids(payments: List[DiscoveredPayment], asset_id: bytes) -> List[bytes]:
        """
        Stealth ids of `payments` in `asset_id`, each listed once.

        A stealthId topped up by several payments appears in several events
        but holds a single balance.
        """
        seen: dict[bytes, None] = {}
        for payment in payments:
            if payment.asset_id == asset_id:
                seen.setdefault(payment.stealth_id, None)
        return list(seen)

    async def _read_balances(self, stealth_ids: List[bytes], asset_id: bytes) -> List[PayableIdentifier]:
        """Read the current balance of every id concurrently; any failure fails the batch."""
        balances = await asyncio.gather(
            *(
                self.reader.read_int(self.vault_address, StorageSlotEncoder.balances_slot(stealth_id, asset_id))
                for stealth_id in stealth_ids
            )
        )
        return [
            PayableIdentifier(stealth_id=stealth_id, balance=balance)
            for stealth_id, balance in zip(stealth_ids, balances)
        ]

    async def current_balances(
        self,
        recipient_public_id: str,
        asset_id: bytes,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> List[PayableIdentifier]:
        """
        Current balance of every stealthId discovered for the recipient.

        Args:
            recipient_public_id: Recipient's stealth public identifier
            asset_id: 32-byte asset identifier to restrict to
            from_block: Optional first block of the discovery scan
            to_block: Optional last block of the discovery scan

        Returns:
            One entry per distinct stealthId, zero balances included
        """
        payments = await self.discovery.discover_payments(
            recipient_public_id, from_block=from_block, to_block=to_block
        )
        stealth_ids = self.unique_stealth_ids(payments, asset_id)
        if not stealth_ids:
            return []
        return await self._read_balances(stealth_ids, asset_id)

    async def aggregate_balance(self, recipient_public_id: str, asset_id: bytes) -> int:
        """Sum of current balances across all identifiers tagged for the recipient."""
        balances = await self.current_balances(recipient_public_id, asset_id)
        total = sum(item.balance for item in balances)
        logger.info(f"Aggregated {len(balances)} stealth ids: total balance {total}")
        return total

    @staticmethod
    def select_payable(balances: List[PayableIdentifier], amount: int) -> List[PayableIdentifier]:
        """
        Greedy largest-first selection covering `amount`.

        Zero balances are skipped. Equal balances are ordered by stealthId
        bytes so the result does not depend on log scan order. If the total
        falls short, every non-zero identifier is returned.
        """
        funded = sorted(
            (item for item in balances if item.balance > 0),
            key=lambda item: (-item.balance, item.stealth_id),
        )

        selected: List[PayableIdentifier] = []
        if amount <= 0:
            return selected

        accumulated = 0
        for item in funded:
            selected.append(item)
            accumulated += item.balance
            if accumulated >= amount:
                break
        return selected

    async def find_payable_identifiers(
        self,
        recipient_public_id: str,
        asset_id: bytes,
        amount: int,
    ) -> List[PayableIdentifier]:
        """
        Fewest stealthIds (largest first) whose balances cover `amount`.

        Args:
            recipient_public_id: Recipient's stealth public identifier
            asset_id: 32-byte asset identifier
            amount: Amount to cover, in base units

        Returns:
            Selected identifiers with their current balances
        """
        balances = await self.current_balances(recipient_public_id, asset_id)
        selected = self.select_payable(balances, amount)
        logger.info(
            f"Selected {len(selected)} of {len(balances)} stealth ids to cover {amount}"
        )
        return selected
