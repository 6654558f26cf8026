#!/usr/bin/env python3
"""Tests for balance aggregation and payable identifier selection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from stealth_indexer.aggregator import BalanceAggregator
from stealth_indexer.errors import TransportError
from stealth_indexer.models import DiscoveredPayment, PayableIdentifier
from stealth_indexer.utils.slot_encoder import StorageSlotEncoder

from conftest import VAULT_ADDRESS, word

ASSET = word(2)
OTHER_ASSET = word(3)
RECIPIENT = "alice.stealth"


def payment(stealth_id: int, asset_id: bytes = ASSET, amount: int = 1) -> DiscoveredPayment:
    return DiscoveredPayment(
        stealth_id=word(stealth_id),
        asset_id=asset_id,
        amount=amount,
        receiver_tag=StorageSlotEncoder.receiver_tag(RECIPIENT),
        block_number=1,
        transaction_hash="0x00",
    )


def make_aggregator(payments, balances):
    """Aggregator over mocked discovery and a reader serving `balances` by stealth id."""
    discovery = MagicMock()
    discovery.discover_payments = AsyncMock(return_value=payments)

    by_slot = {
        StorageSlotEncoder.balances_slot(word(stealth_id), ASSET): balance
        for stealth_id, balance in balances.items()
    }
    reader = MagicMock()
    reader.read_int = AsyncMock(side_effect=lambda address, slot: by_slot.get(slot, 0))

    return BalanceAggregator(discovery, reader, VAULT_ADDRESS), reader


class TestAggregateBalance:
    """Sum of current balances."""

    @pytest.mark.asyncio
    async def test_no_payments_is_zero(self):
        aggregator, reader = make_aggregator([], {})

        assert await aggregator.aggregate_balance(RECIPIENT, ASSET) == 0
        reader.read_int.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sums_current_balances_not_logged_amounts(self):
        aggregator, _ = make_aggregator(
            [payment(1, amount=100), payment(2, amount=100)],
            {1: 40, 2: 0},
        )

        assert await aggregator.aggregate_balance(RECIPIENT, ASSET) == 40

    @pytest.mark.asyncio
    async def test_repeated_stealth_id_counted_once(self):
        aggregator, reader = make_aggregator([payment(1), payment(1), payment(2)], {1: 10, 2: 5})

        assert await aggregator.aggregate_balance(RECIPIENT, ASSET) == 15
        assert reader.read_int.await_count == 2

    @pytest.mark.asyncio
    async def test_other_assets_ignored(self):
        aggregator, reader = make_aggregator([payment(1), payment(9, asset_id=OTHER_ASSET)], {1: 10})

        assert await aggregator.aggregate_balance(RECIPIENT, ASSET) == 10
        assert reader.read_int.await_count == 1

    @pytest.mark.asyncio
    async def test_read_failure_fails_aggregation(self):
        aggregator, reader = make_aggregator([payment(1), payment(2)], {1: 10, 2: 5})
        reader.read_int.side_effect = TransportError("rpc down")

        with pytest.raises(TransportError):
            await aggregator.aggregate_balance(RECIPIENT, ASSET)

    @pytest.mark.asyncio
    async def test_current_balances_passes_range(self):
        aggregator, _ = make_aggregator([payment(1)], {1: 3})

        balances = await aggregator.current_balances(RECIPIENT, ASSET, from_block=10, to_block=20)

        assert balances == [PayableIdentifier(stealth_id=word(1), balance=3)]
        aggregator.discovery.discover_payments.assert_awaited_once_with(RECIPIENT, from_block=10, to_block=20)


class TestSelectPayable:
    """Greedy largest-first selection."""

    def test_stops_once_amount_covered(self):
        balances = [
            PayableIdentifier(word(1), 10),
            PayableIdentifier(word(2), 50),
            PayableIdentifier(word(3), 30),
        ]

        selected = BalanceAggregator.select_payable(balances, 70)

        assert [item.stealth_id for item in selected] == [word(2), word(3)]
        assert sum(item.balance for item in selected) >= 70

    def test_shortfall_returns_all_funded(self):
        balances = [PayableIdentifier(word(1), 10), PayableIdentifier(word(2), 0), PayableIdentifier(word(3), 5)]

        selected = BalanceAggregator.select_payable(balances, 100)

        assert [item.stealth_id for item in selected] == [word(1), word(3)]

    def test_zero_balances_skipped(self):
        balances = [PayableIdentifier(word(1), 0), PayableIdentifier(word(2), 5)]

        assert BalanceAggregator.select_payable(balances, 5) == [PayableIdentifier(word(2), 5)]

    def test_equal_balances_ordered_by_stealth_id(self):
        balances = [PayableIdentifier(word(9), 5), PayableIdentifier(word(4), 5), PayableIdentifier(word(7), 5)]

        selected = BalanceAggregator.select_payable(balances, 15)

        assert [item.stealth_id for item in selected] == [word(4), word(7), word(9)]

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount_selects_nothing(self, amount):
        assert BalanceAggregator.select_payable([PayableIdentifier(word(1), 5)], amount) == []

    def test_single_identifier_covers(self):
        balances = [PayableIdentifier(word(1), 100), PayableIdentifier(word(2), 1)]

        assert BalanceAggregator.select_payable(balances, 100) == [PayableIdentifier(word(1), 100)]

    @pytest.mark.asyncio
    async def test_find_payable_identifiers(self):
        aggregator, _ = make_aggregator([payment(1), payment(2), payment(3)], {1: 10, 2: 50, 3: 30})

        selected = await aggregator.find_payable_identifiers(RECIPIENT, ASSET, 60)

        assert selected == [PayableIdentifier(word(2), 50), PayableIdentifier(word(3), 30)]
