"""Conversion between on-chain minor units (wei) and ether display values."""
from decimal import Decimal
from typing import Union

from web3 import Web3


def to_display_amount(amount_wei: int) -> Decimal:
    """Convert an integer wei amount to an exact ``Decimal`` ether value."""
    if amount_wei < 0:
        raise ValueError(f"Amount must be non-negative, got {amount_wei}")
    # from_wei returns a plain int 0 for zero
    return Decimal(Web3.from_wei(amount_wei, "ether"))


def to_minor_units(amount_eth: Union[Decimal, str, int]) -> int:
    """Convert an ether display value back to integer wei."""
    return int(Web3.to_wei(Decimal(amount_eth), "ether"))
