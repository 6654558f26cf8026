"""
Storage slot arithmetic for the StealthVault contract.

Solidity places the value of `mapping(bytes32 => T) m` at key `k` in slot
`keccak256(abi.encode(k, p))`, where `p` is the slot number of `m` itself.
Nested mappings repeat the rule using the numeric value of the outer slot as
the new `p`, and struct fields live at consecutive slots after the struct's
base slot. This module computes those addresses without touching the chain.
"""

import logging
import re
from typing import Union

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from ..errors import ValidationError

logger = logging.getLogger(__name__)

# The vault's token is immutable, so it takes no storage slot and
# `balances` sits at slot 0.
BALANCES_BASE_SLOT = 0
INVOICES_BASE_SLOT = 1
# Invoice struct field order: merchant, assetId, amount, paid
INVOICE_PAID_OFFSET = 3

SLOT_SIZE = 32
SLOT_MODULUS = 2**256

_HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")


class StorageSlotEncoder:
    """Pure helpers for computing vault storage addresses."""

    @staticmethod
    def to_bytes_safe(value: Union[HexBytes, bytes, str]) -> bytes:
        """
        Convert HexBytes, bytes or a 0x-prefixed hex string to bytes.

        Args:
            value: Value to convert

        Returns:
            Bytes representation
        """
        if isinstance(value, HexBytes):
            return bytes(value)
        elif isinstance(value, bytes):
            return value
        else:
            return Web3.to_bytes(hexstr=value)

    @staticmethod
    def parse_hex32(value: str | None, label: str) -> bytes:
        """
        Parse a 0x-prefixed hex string holding exactly 32 bytes.

        Args:
            value: Hex string supplied by the caller
            label: Field name used in error messages

        Returns:
            The 32 decoded bytes

        Raises:
            ValidationError: If the value is missing, not hex, or not 32 bytes
        """
        if not isinstance(value, str) or not _HEX_RE.fullmatch(value):
            raise ValidationError(f"{label} must be a 0x-prefixed hex string")
        try:
            decoded = bytes.fromhex(value[2:])
        except ValueError:
            raise ValidationError(f"{label} must be a 0x-prefixed hex string") from None
        if len(decoded) != SLOT_SIZE:
            raise ValidationError(
                f"{label} must be 32 bytes (received {len(decoded)})"
            )
        return decoded

    @staticmethod
    def _require_key(key: bytes) -> None:
        if len(key) != SLOT_SIZE:
            raise ValidationError(f"Mapping key must be 32 bytes (received {len(key)})")

    @staticmethod
    def mapping_slot(key: bytes, base_slot: int) -> bytes:
        """
        Slot of `m[key]` for a mapping declared at `base_slot`.

        Args:
            key: 32-byte mapping key
            base_slot: Slot number of the mapping (or of the enclosing slot)

        Returns:
            32-byte slot address
        """
        StorageSlotEncoder._require_key(key)
        return bytes(Web3.keccak(encode(["bytes32", "uint256"], [key, base_slot])))

    @staticmethod
    def nested_mapping_slot(outer_key: bytes, inner_key: bytes, base_slot: int) -> bytes:
        """
        Slot of `m[outer_key][inner_key]` for a two-level mapping.

        The inner lookup uses the integer value of the outer slot as its base,
        not the declared base constant.
        """
        outer_slot = StorageSlotEncoder.mapping_slot(outer_key, base_slot)
        return StorageSlotEncoder.mapping_slot(inner_key, StorageSlotEncoder.slot_to_int(outer_slot))

    @staticmethod
    def add_slot_offset(slot: bytes, offset: int) -> bytes:
        """
        Address of a struct field `offset` slots after `slot`, wrapping mod 2**256.
        """
        if offset < 0:
            raise ValidationError(f"Slot offset must be non-negative, got {offset}")
        value = (StorageSlotEncoder.slot_to_int(slot) + offset) % SLOT_MODULUS
        return value.to_bytes(SLOT_SIZE, "big")

    @staticmethod
    def slot_to_int(slot: bytes) -> int:
        return int.from_bytes(slot, "big")

    @staticmethod
    def balances_slot(stealth_id: bytes, asset_id: bytes) -> bytes:
        """Slot of `balances[stealthId][assetId]`."""
        return StorageSlotEncoder.nested_mapping_slot(stealth_id, asset_id, BALANCES_BASE_SLOT)

    @staticmethod
    def invoice_struct_slot(invoice_id: bytes) -> bytes:
        """Base slot of the `invoices[invoiceId]` struct."""
        return StorageSlotEncoder.mapping_slot(invoice_id, INVOICES_BASE_SLOT)

    @staticmethod
    def invoice_paid_slot(invoice_id: bytes) -> bytes:
        """Slot holding the `paid` flag of `invoices[invoiceId]`."""
        return StorageSlotEncoder.add_slot_offset(
            StorageSlotEncoder.invoice_struct_slot(invoice_id),
            INVOICE_PAID_OFFSET,
        )

    @staticmethod
    def receiver_tag(public_id: str) -> bytes:
        """
        Derive the receiver tag a sender attaches to payments for `public_id`.

        A 0x-prefixed hex public id is hashed as the bytes it encodes; any
        other string is hashed as UTF-8 text.

        Args:
            public_id: Recipient's stealth public identifier

        Returns:
            32-byte keccak256 digest
        """
        if not public_id:
            raise ValidationError("stealthPublicId must not be empty")
        if _HEX_RE.match(public_id):
            return bytes(Web3.keccak(hexstr=public_id))
        return bytes(Web3.keccak(text=public_id))
