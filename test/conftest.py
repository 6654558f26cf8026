"""Shared fixtures for the stealth indexer tests."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from stealth_indexer.config import IndexerConfig, VaultChainConfig

VAULT_ADDRESS = "0x85BfE05492aFC3D04Ff3B2ca6771ACF6f853d90d"
HOST_ADDRESS = "0x1f54b7af3a462aabed01d5910a3e5911e76d4b51"
RPC_URL = "http://localhost:8545"


def word(value: int) -> bytes:
    """32-byte big-endian encoding of `value`."""
    return value.to_bytes(32, "big")


def hex32(value: int) -> str:
    return "0x" + word(value).hex()


class FakeEth:
    """Stands in for AsyncWeb3's `eth` namespace."""

    def __init__(self, block_number=0, storage=None):
        self._block_number = block_number
        self.storage = storage if storage is not None else {}
        self.get_storage_at = AsyncMock(side_effect=self._get_storage_at)

    async def _get_storage_at(self, address, position):
        return self.storage.get(position, b"")

    @property
    def block_number(self):
        async def _value():
            if isinstance(self._block_number, Exception):
                raise self._block_number
            return self._block_number
        return _value()


@pytest.fixture
def fake_eth():
    return FakeEth(block_number=1_000)


@pytest.fixture
def fake_w3(fake_eth):
    return SimpleNamespace(eth=fake_eth)


@pytest.fixture
def indexer_config(tmp_path):
    """Minimal configuration: local queries, no relay."""
    env = {
        "STEALTH_VAULT_ADDRESS_PASSET": VAULT_ADDRESS,
        "PASSET_RPC_URL": RPC_URL,
        "HYPERBRIDGE_INDEXER_CACHE": str(tmp_path / "state.json"),
    }
    return IndexerConfig.from_env(env)


@pytest.fixture
def vault_config():
    return VaultChainConfig(rpc_url=RPC_URL, vault_address=VAULT_ADDRESS)
