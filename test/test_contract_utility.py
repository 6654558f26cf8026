#!/usr/bin/env python3
"""Tests for ABI loading."""

import pytest
from web3 import AsyncWeb3

from stealth_indexer.utils.contract_utility import ContractUtility

from conftest import RPC_URL, VAULT_ADDRESS


class TestContractUtility:
    """StealthVault ABI and contract handles."""

    def test_abi_has_payment_event(self):
        abi = ContractUtility.get_contract_abi("StealthVault")

        event = next(item for item in abi if item.get("type") == "event" and item["name"] == "StealthPayment")
        assert [(arg["name"], arg["indexed"]) for arg in event["inputs"]] == [
            ("stealthId", True),
            ("assetId", True),
            ("amount", False),
            ("receiverTag", True),
        ]

    def test_missing_contract(self):
        with pytest.raises(FileNotFoundError):
            ContractUtility.get_contract_abi("DoesNotExist")

    def test_vault_contract_binding(self):
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(RPC_URL))

        contract = ContractUtility.vault_contract(w3, VAULT_ADDRESS.lower())

        assert contract.address == VAULT_ADDRESS
        assert hasattr(contract.functions, "balances")
        assert hasattr(contract.events, "StealthPayment")
