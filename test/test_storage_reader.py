#!/usr/bin/env python3
"""Tests for raw storage reads."""

import pytest
from hexbytes import HexBytes

from stealth_indexer.errors import TransportError
from stealth_indexer.utils.storage_reader import ZERO_WORD, StorageReader

from conftest import RPC_URL, VAULT_ADDRESS, word


@pytest.fixture
def reader(fake_w3):
    return StorageReader(RPC_URL, w3=fake_w3)


class TestNormalizeWord:
    """Normalization of eth_getStorageAt results."""

    @pytest.mark.parametrize("value", [None, "", "0x", b"", HexBytes(b"")])
    def test_empty_results_are_zero_word(self, value):
        assert StorageReader.normalize_word(value) == ZERO_WORD

    def test_short_word_is_left_padded(self):
        assert StorageReader.normalize_word(HexBytes("0x0a")) == word(10)

    def test_hex_string(self):
        assert StorageReader.normalize_word("0x" + "00" * 31 + "ff") == word(255)


class TestStorageReader:
    """Reads through the fake RPC."""

    @pytest.mark.asyncio
    async def test_read_slot(self, reader, fake_eth):
        fake_eth.storage[5] = HexBytes(word(10))

        result = await reader.read_slot(VAULT_ADDRESS, word(5))

        assert result == word(10)
        fake_eth.get_storage_at.assert_awaited_once_with(VAULT_ADDRESS, 5)

    @pytest.mark.asyncio
    async def test_unset_slot_reads_zero(self, reader):
        assert await reader.read_slot(VAULT_ADDRESS, word(6)) == ZERO_WORD
        assert await reader.read_int(VAULT_ADDRESS, word(6)) == 0

    @pytest.mark.asyncio
    async def test_read_int(self, reader, fake_eth):
        fake_eth.storage[1] = HexBytes(word(10**18))
        assert await reader.read_int(VAULT_ADDRESS, word(1)) == 10**18

    @pytest.mark.asyncio
    async def test_rpc_failure_is_transport_error(self, reader, fake_eth):
        fake_eth.get_storage_at.side_effect = ConnectionError("connection refused")

        with pytest.raises(TransportError, match="connection refused"):
            await reader.read_slot(VAULT_ADDRESS, word(5))

    @pytest.mark.asyncio
    async def test_get_block_number(self, reader):
        assert await reader.get_block_number() == 1_000

    @pytest.mark.asyncio
    async def test_block_number_failure(self, reader, fake_eth):
        fake_eth._block_number = TimeoutError("timed out")

        with pytest.raises(TransportError, match="block number"):
            await reader.get_block_number()

    def test_get_status(self, reader):
        assert reader.get_status() == {"rpc_url": RPC_URL, "request_timeout": 20.0}
