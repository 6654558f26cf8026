"""
Shared data models for the stealth indexer.

Results are computed fresh per query and never persisted; only PacketRecord
lives on disk, inside the relay cache snapshot. Every `to_dict` renders
integers as decimal strings and byte fields as 0x-prefixed hex, which is the
wire format of the HTTP service.
"""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from web3 import Web3

from .errors import DecodeError

ASSET_DECIMALS = 18
HUMAN_PLACES = 4


def format_units(raw: int, decimals: int = ASSET_DECIMALS, places: int = HUMAN_PLACES) -> str:
    """Render `raw / 10**decimals` with `places` fractional digits, rounding half up."""
    scale = 10**places
    unit = 10**decimals
    sign = "-" if raw < 0 else ""
    scaled = (abs(raw) * scale + unit // 2) // unit
    return f"{sign}{scaled // scale}.{scaled % scale:0{places}d}"


def _hex(value: bytes) -> str:
    return Web3.to_hex(value)


@dataclass(frozen=True, slots=True)
class BalanceResult:
    """Current balance of one (stealthId, assetId) pair read from vault storage.

    Attributes:
        chain_id: Chain ID of the vault chain
        vault_address: Address of the StealthVault contract
        stealth_id: 32-byte payment identifier
        asset_id: 32-byte asset identifier
        slot: Storage slot of `balances[stealthId][assetId]`
        raw: Integer value read from the slot
    """
    chain_id: int
    vault_address: str
    stealth_id: bytes
    asset_id: bytes
    slot: bytes
    raw: int

    @property
    def human(self) -> str:
        return format_units(self.raw)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chainId": str(self.chain_id),
            "vaultAddress": self.vault_address,
            "stealthId": _hex(self.stealth_id),
            "assetId": _hex(self.asset_id),
            "slot": _hex(self.slot),
            "raw": str(self.raw),
            "human": self.human,
        }


@dataclass(frozen=True, slots=True)
class CreditResult:
    """A balance plus the answer to "can it cover `requested_amount`"."""
    balance: BalanceResult
    requested_amount: int

    @property
    def can_pay(self) -> bool:
        return self.balance.raw >= self.requested_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.balance.to_dict(),
            "requestedAmount": str(self.requested_amount),
            "canPay": self.can_pay,
        }


@dataclass(frozen=True, slots=True)
class AggregatedCreditResult:
    """Sum of current balances over every stealthId tagged for one recipient.

    The receiver tag is echoed in the `stealthId` and `slot` wire fields so
    callers that only understand the single-identifier shape keep working.
    """
    chain_id: int
    vault_address: str
    receiver_tag: bytes
    asset_id: bytes
    raw: int
    requested_amount: int
    stealth_ids: tuple[bytes, ...] = ()

    @property
    def human(self) -> str:
        return format_units(self.raw)

    @property
    def can_pay(self) -> bool:
        return self.raw >= self.requested_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "chainId": str(self.chain_id),
            "vaultAddress": self.vault_address,
            "stealthId": _hex(self.receiver_tag),
            "assetId": _hex(self.asset_id),
            "slot": _hex(self.receiver_tag),
            "receiverTag": _hex(self.receiver_tag),
            "raw": str(self.raw),
            "human": self.human,
            "requestedAmount": str(self.requested_amount),
            "canPay": self.can_pay,
            "stealthIds": [_hex(stealth_id) for stealth_id in self.stealth_ids],
        }


@dataclass(frozen=True, slots=True)
class InvoiceStatusResult:
    """Paid flag of one invoice, decoded from its raw storage word."""
    chain_id: int
    vault_address: str
    invoice_id: bytes
    slot: bytes
    raw: int

    @property
    def paid(self) -> bool:
        return self.raw != 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "chainId": str(self.chain_id),
            "vaultAddress": self.vault_address,
            "invoiceId": _hex(self.invoice_id),
            "slot": _hex(self.slot),
            "raw": str(self.raw),
            "paid": self.paid,
        }


@dataclass(frozen=True, slots=True)
class DiscoveredPayment:
    """A StealthPayment event whose receiver tag matched the recipient.

    Attributes:
        stealth_id: Identifier the payment was deposited under
        asset_id: Asset of the payment
        amount: Amount logged at deposit time (not the current balance)
        receiver_tag: Tag the sender attached to the payment
        block_number: Block where the event was emitted
        transaction_hash: Hash of the emitting transaction
    """
    stealth_id: bytes
    asset_id: bytes
    amount: int
    receiver_tag: bytes
    block_number: int
    transaction_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stealthId": _hex(self.stealth_id),
            "assetId": _hex(self.asset_id),
            "amount": str(self.amount),
            "receiverTag": _hex(self.receiver_tag),
            "blockNumber": str(self.block_number),
            "transactionHash": self.transaction_hash,
        }


@dataclass(frozen=True, slots=True)
class PayableIdentifier:
    """A stealthId selected to fund a multi-input payment, with its balance."""
    stealth_id: bytes
    balance: int

    def to_dict(self) -> dict[str, Any]:
        return {"stealthId": _hex(self.stealth_id), "balance": str(self.balance)}


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True, slots=True)
class PacketRecord:
    """A relay packet or receipt as kept in the packet cache.

    Attributes:
        id: Relay-assigned identifier (commitment), or a random UUID
        height: Block height the packet was observed at, if known
        source: Source state machine identifier
        dest: Destination state machine identifier
        timestamp: Observation time in milliseconds
        raw: The payload exactly as the relay delivered it
    """
    id: str
    height: int | None = None
    source: str | None = None
    dest: str | None = None
    timestamp: int | None = None
    raw: Any = field(default=None, compare=False)

    @classmethod
    def from_relay(cls, raw: Any) -> "PacketRecord":
        """Normalize a relay payload of unknown exact shape."""
        packet: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}

        packet_id = packet.get("id") or packet.get("packetId") or packet.get("commitment")
        raw_height = packet.get("height")
        height = _optional_int(raw_height if raw_height is not None else packet.get("blockNumber"))
        timestamp = _optional_int(packet.get("timestamp"))

        return cls(
            id=str(packet_id) if packet_id else str(uuid.uuid4()),
            height=height,
            source=packet.get("source") or packet.get("sourceStateMachineId"),
            dest=packet.get("dest") or packet.get("destStateMachineId"),
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
            raw=raw,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PacketRecord":
        """Rebuild a record from its cached JSON form."""
        if "id" not in data:
            raise DecodeError("Cached packet record is missing its id")
        return cls(
            id=str(data["id"]),
            height=_optional_int(data.get("height")),
            source=data.get("source"),
            dest=data.get("dest"),
            timestamp=_optional_int(data.get("timestamp")),
            raw=data.get("raw"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "height": self.height,
            "source": self.source,
            "dest": self.dest,
            "timestamp": self.timestamp,
            "raw": self.raw,
        }
