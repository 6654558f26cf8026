"""
Discovery of StealthPayment events addressed to a recipient.

The vault chain's RPC does not reliably filter logs by indexed topics, so
every StealthPayment in a bounded block range is fetched and matched against
the recipient's receiver tag locally.
"""

import logging
from typing import Any, Dict, List, Optional

from web3 import AsyncWeb3, Web3
from web3.types import EventData

from .errors import TransportError
from .models import DiscoveredPayment
from .utils.contract_utility import ContractUtility
from .utils.slot_encoder import StorageSlotEncoder

PAYMENT_EVENT_NAME = "StealthPayment"


class PaymentDiscovery:
    """
    Scans the vault's StealthPayment events and keeps those tagged for one recipient.

    Payments older than the scanned window are invisible here; the window
    exists to stay under the RPC's log-query limits.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        vault_address: str,
        lookback_blocks: int = 10_000,
        min_chunk_blocks: int = 500,
    ):
        """
        Initialize payment discovery.

        Args:
            w3: AsyncWeb3 connected to the vault chain
            vault_address: Address of the StealthVault contract
            lookback_blocks: Default number of recent blocks to scan
            min_chunk_blocks: Smallest range to retry with after the RPC rejects a query
        """
        self.w3 = w3
        self.vault_address = Web3.to_checksum_address(vault_address)
        self.lookback_blocks = lookback_blocks
        self.min_chunk_blocks = max(1, min_chunk_blocks)

        self.contract = ContractUtility.vault_contract(w3, self.vault_address)
        if not hasattr(self.contract.events, PAYMENT_EVENT_NAME):
            raise ValueError(f"Event {PAYMENT_EVENT_NAME} not found in contract ABI")
        self.event_obj = getattr(self.contract.events, PAYMENT_EVENT_NAME)

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def resolve_range(
        self,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> tuple[int, int]:
        """
        Work out the block range to scan.

        Defaults to the last `lookback_blocks` blocks; the lower bound is
        clamped to genesis.
        """
        if to_block is None:
            try:
                to_block = int(await self.w3.eth.block_number)
            except Exception as e:
                raise TransportError(f"Failed to fetch block number: {e}") from e
        if from_block is None:
            from_block = to_block - self.lookback_blocks
        return max(0, from_block), max(0, to_block)

    async def _get_logs(self, from_block: int, to_block: int) -> List[EventData]:
        """
        Fetch payment events, halving the range whenever the RPC rejects it.
        """
        try:
            return list(await self.event_obj.get_logs(from_block=from_block, to_block=to_block))
        except Exception as e:
            span = to_block - from_block + 1
            if span <= self.min_chunk_blocks:
                raise TransportError(
                    f"Failed to fetch {PAYMENT_EVENT_NAME} logs for blocks {from_block}-{to_block}: {e}"
                ) from e
            middle = from_block + span // 2
            self.logger.warning(
                f"Log query for blocks {from_block}-{to_block} rejected ({e}), "
                f"retrying as {from_block}-{middle - 1} and {middle}-{to_block}"
            )

        first = await self._get_logs(from_block, middle - 1)
        second = await self._get_logs(middle, to_block)
        return first + second

    @staticmethod
    def to_payment(event: EventData) -> DiscoveredPayment:
        args: Dict[str, Any] = dict(event.get("args", {}))

        match event.get("transactionHash"):
            case bytes() as tx_hash_bytes:
                tx_hash = Web3.to_hex(tx_hash_bytes)
            case str() as tx_hash:
                pass
            case _:
                tx_hash = "0x"

        return DiscoveredPayment(
            stealth_id=StorageSlotEncoder.to_bytes_safe(args["stealthId"]),
            asset_id=StorageSlotEncoder.to_bytes_safe(args["assetId"]),
            amount=int(args.get("amount", 0)),
            receiver_tag=StorageSlotEncoder.to_bytes_safe(args["receiverTag"]),
            block_number=int(event.get("blockNumber", 0)),
            transaction_hash=tx_hash,
        )

    async def discover_payments(
        self,
        recipient_public_id: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> List[DiscoveredPayment]:
        """
        Find every StealthPayment tagged for `recipient_public_id`.

        Args:
            recipient_public_id: Recipient's stealth public identifier
            from_block: First block to scan (default: `lookback_blocks` back)
            to_block: Last block to scan (default: latest)

        Returns:
            Matching payments in log order

        Raises:
            TransportError: If the chain cannot be queried
        """
        receiver_tag = StorageSlotEncoder.receiver_tag(recipient_public_id)
        start, end = await self.resolve_range(from_block, to_block)

        self.logger.info(
            f"Scanning {PAYMENT_EVENT_NAME} events on {self.vault_address} "
            f"from block {start} to {end} for tag {Web3.to_hex(receiver_tag)[:10]}..."
        )

        events = await self._get_logs(start, end)
        payments = []
        for event in events:
            args = event.get("args", {})
            if StorageSlotEncoder.to_bytes_safe(args.get("receiverTag", b"")) != receiver_tag:
                continue
            payments.append(self.to_payment(event))

        self.logger.info(f"Matched {len(payments)} of {len(events)} {PAYMENT_EVENT_NAME} events")
        return payments

    def get_status(self) -> Dict[str, Any]:
        return {
            "contract_address": self.vault_address,
            "event_name": PAYMENT_EVENT_NAME,
            "lookback_blocks": self.lookback_blocks,
            "min_chunk_blocks": self.min_chunk_blocks,
        }
