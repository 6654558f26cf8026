"""
Raw contract storage reads against an EVM JSON-RPC endpoint.
"""

import logging
from typing import Any, Dict

from web3 import AsyncWeb3, Web3

from ..errors import TransportError
from .slot_encoder import SLOT_SIZE, StorageSlotEncoder

ZERO_WORD = b"\x00" * SLOT_SIZE


class StorageReader:
    """
    Reads single 32-byte storage words via `eth_getStorageAt`.

    One outbound call per read, no retries and no caching; callers that
    aggregate many reads schedule them themselves.
    """

    def __init__(self, rpc_url: str, request_timeout: float = 20.0, w3: AsyncWeb3 | None = None):
        """
        Initialize the storage reader.

        Args:
            rpc_url: HTTP RPC endpoint URL of the vault chain
            request_timeout: Transport-level timeout for each RPC call, in seconds
            w3: Pre-built AsyncWeb3 instance (mainly for tests)
        """
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @staticmethod
    def normalize_word(value: Any) -> bytes:
        """
        Normalize an `eth_getStorageAt` result to exactly 32 bytes.

        Uninitialized storage is legitimately zero, so None, empty bytes and
        a bare "0x" all map to the zero word.
        """
        if value is None:
            return ZERO_WORD
        if isinstance(value, str) and value in ("", "0x", "0X"):
            return ZERO_WORD
        word = StorageSlotEncoder.to_bytes_safe(value)
        if not word:
            return ZERO_WORD
        return word.rjust(SLOT_SIZE, b"\x00")[-SLOT_SIZE:]

    async def read_slot(self, contract_address: str, slot: bytes) -> bytes:
        """
        Read the raw storage word at `slot` of `contract_address`.

        Args:
            contract_address: Address of the contract whose storage is read
            slot: 32-byte storage slot

        Returns:
            32-byte storage word

        Raises:
            TransportError: If the RPC request fails
        """
        address = Web3.to_checksum_address(contract_address)
        position = StorageSlotEncoder.slot_to_int(slot)
        try:
            value = await self.w3.eth.get_storage_at(address, position)
        except Exception as e:
            raise TransportError(f"Storage read failed at slot {Web3.to_hex(slot)}: {e}") from e

        word = self.normalize_word(value)
        self.logger.debug(f"Read slot {Web3.to_hex(slot)[:10]}... of {address}: {Web3.to_hex(word)}")
        return word

    async def read_int(self, contract_address: str, slot: bytes) -> int:
        """Read a storage word and interpret it as a big-endian uint256."""
        return int.from_bytes(await self.read_slot(contract_address, slot), "big")

    async def get_block_number(self) -> int:
        """Latest block number of the vault chain."""
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            raise TransportError(f"Failed to fetch block number: {e}") from e

    def get_status(self) -> Dict[str, Any]:
        return {
            "rpc_url": self.rpc_url,
            "request_timeout": self.request_timeout,
        }
