import json
from functools import lru_cache
from pathlib import Path

from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract

CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"


class ContractUtility:
    """
    Utility for ABI loading and read-only contract handles.

    The indexer never signs or sends transactions, so this only needs the
    ABI files shipped with the package and an already connected AsyncWeb3.
    """

    @staticmethod
    @lru_cache(maxsize=None)
    def get_contract_abi(contract_name: str) -> list:
        """Fetches ABI of the given contract from the contracts folder"""
        contract_path = (CONTRACTS_DIR / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data = json.load(file)

        return contract_data["abi"]

    @staticmethod
    def vault_contract(w3: AsyncWeb3, vault_address: str) -> AsyncContract:
        """Bind the StealthVault ABI to `vault_address` on `w3`."""
        return w3.eth.contract(
            address=Web3.to_checksum_address(vault_address),
            abi=ContractUtility.get_contract_abi("StealthVault"),
        )
