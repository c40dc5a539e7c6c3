"""Tests for platform fee calculation."""

from __future__ import annotations

import pytest

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.enums import FeeTier
from marketplace_escrow.domain.exceptions import InvalidAmountError, InvalidRequestError
from marketplace_escrow.domain.fees import compute_fees, normalize_currency, validate_amount

RATES = Settings().fee_rates_bps


class TestComputeFees:
    def test_standard_tier_on_100_dollars(self) -> None:
        fees = compute_fees(10000, FeeTier.STANDARD, RATES)
        assert fees.platform_fee == 3000
        assert fees.seller_amount == 7000
        assert fees.rate_bps == 3000

    def test_hype_tier(self) -> None:
        fees = compute_fees(10000, "hype", RATES)
        assert fees.platform_fee == 1000
        assert fees.seller_amount == 9000

    def test_rounds_half_up(self) -> None:
        # 15% of 10 = 1.5 -> 2
        fees = compute_fees(10, FeeTier.EXCLUSIVE, RATES)
        assert fees.platform_fee == 2
        assert fees.seller_amount == 8

    def test_rounds_down_below_half(self) -> None:
        # 30% of 1 = 0.3 -> 0
        fees = compute_fees(1, FeeTier.STANDARD, RATES)
        assert fees.platform_fee == 0
        assert fees.seller_amount == 1

    @pytest.mark.parametrize("tier", list(FeeTier))
    @pytest.mark.parametrize("amount", [1, 7, 99, 1001, 12345, 999_999_999])
    def test_split_always_sums_to_amount(self, tier: FeeTier, amount: int) -> None:
        fees = compute_fees(amount, tier, RATES)
        assert fees.platform_fee + fees.seller_amount == amount
        assert fees.platform_fee >= 0
        assert fees.seller_amount >= 0

    def test_rates_come_from_configuration(self) -> None:
        fees = compute_fees(10000, FeeTier.STANDARD, {**RATES, "standard": 2500})
        assert fees.platform_fee == 2500

    def test_missing_tier_rate(self) -> None:
        with pytest.raises(ValueError, match="No fee rate"):
            compute_fees(100, FeeTier.PREMIUM, {"standard": 3000})

    def test_out_of_range_rate(self) -> None:
        with pytest.raises(ValueError, match="out of range"):
            compute_fees(100, FeeTier.STANDARD, {"standard": 10001})


class TestValidateAmount:
    @pytest.mark.parametrize("amount", [0, -1, 10.5, "100", None, True])
    def test_rejects_non_positive_or_non_integer(self, amount: object) -> None:
        with pytest.raises(InvalidAmountError):
            validate_amount(amount)

    def test_accepts_positive_int(self) -> None:
        assert validate_amount(1) == 1


class TestNormalizeCurrency:
    def test_default_applies_when_missing(self) -> None:
        assert normalize_currency(None, "usd") == "usd"

    def test_lower_cases(self) -> None:
        assert normalize_currency("EUR", "usd") == "eur"

    @pytest.mark.parametrize("currency", ["dollars", "u$d", "us", "12a", "ñzd"])
    def test_rejects_non_iso_codes(self, currency: str) -> None:
        with pytest.raises(InvalidRequestError, match="currency"):
            normalize_currency(currency, "usd")
