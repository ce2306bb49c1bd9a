"""
Input validation helpers shared by auth and the API layer.
"""

import re
from typing import Optional

WALLET_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def validate_wallet_address(address: Optional[str]) -> bool:
    """True for a 0x-prefixed 20-byte hex address."""
    if not address:
        return False
    return bool(WALLET_ADDRESS_RE.match(address))


def normalize_wallet_address(address: str) -> str:
    """Addresses are stored lowercase."""
    return address.strip().lower()
