"""Platform fee calculation.

All arithmetic is on integer minor units; rates are integer basis points
(1 bp = 0.01%). The platform fee is rounded half up to a whole minor unit and
the seller amount is derived by subtraction, so the two always sum to the
order amount exactly.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from marketplace_escrow.domain.enums import FeeTier
from marketplace_escrow.domain.exceptions import InvalidAmountError, InvalidRequestError

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class FeeBreakdown:
    """Split of an order amount between the platform and the seller."""

    amount: int
    platform_fee: int
    seller_amount: int
    rate_bps: int


def validate_amount(amount: object) -> int:
    """Return amount if it is a positive integer, else raise InvalidAmountError."""
    # bool is an int subclass; True is not a price.
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)
    return amount


def normalize_currency(currency: str | None, default: str) -> str:
    """Return the lower-case three-letter currency code, else raise InvalidRequestError."""
    code = (currency or default).lower()
    if len(code) != 3 or not code.isascii() or not code.isalpha():
        raise InvalidRequestError(f"Invalid currency code '{currency}'")
    return code


def compute_fees(amount: int, tier: FeeTier | str, rates_bps: Mapping[str, int]) -> FeeBreakdown:
    """Compute platform fee and seller net amount for an order.

    Args:
        amount: Order amount in minor units (cents). Must be > 0.
        tier: Fee tier of the listing.
        rates_bps: Tier name -> rate in basis points (see Settings.fee_rates_bps).

    Returns:
        FeeBreakdown with platform_fee + seller_amount == amount.

    Raises:
        InvalidAmountError: amount is not a positive integer.
        ValueError: the tier has no configured rate.
    """
    validate_amount(amount)
    tier = FeeTier(tier)
    try:
        rate = rates_bps[tier.value]
    except KeyError:
        raise ValueError(f"No fee rate configured for tier '{tier.value}'") from None
    if not 0 <= rate <= BPS_DENOMINATOR:
        raise ValueError(f"Fee rate for tier '{tier.value}' out of range: {rate} bps")

    # Round half up: floor((amount * rate + denominator / 2) / denominator)
    platform_fee = (amount * rate + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR
    return FeeBreakdown(
        amount=amount,
        platform_fee=platform_fee,
        seller_amount=amount - platform_fee,
        rate_bps=rate,
    )
