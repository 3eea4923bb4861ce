"""Contract ABI utilities.

ABIs are stored as JSON files in this directory and loaded at runtime. Only
the events and functions the sync engine touches are kept.
"""

import json
from functools import lru_cache
from pathlib import Path

REGISTRY = "PNSRegistry"
RESOLVER = "PNSResolver"
DOMAIN_NFT = "DomainNFT"
BRIDGE = "RegistryBridge"


@lru_cache(maxsize=None)
def get_contract_abi(contract_name: str) -> list[dict]:
    """Load contract ABI from package resources.

    Args:
        contract_name: Name of the contract (e.g. "PNSRegistry")

    Returns:
        ABI as list of function/event descriptors

    Raises:
        FileNotFoundError: If ABI file doesn't exist for the specified contract
    """
    abi_path = Path(__file__).parent / f"{contract_name}.json"

    if not abi_path.exists():
        raise FileNotFoundError(f"ABI file not found: {abi_path}")

    with open(abi_path) as f:
        return json.load(f)
