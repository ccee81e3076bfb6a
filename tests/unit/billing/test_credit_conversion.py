# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors

from decimal import Decimal

from creditline_core.billing.conversion import credits_to_usd, format_credits, usd_to_credits


def test_credits_to_usd() -> None:
    assert credits_to_usd(1_500_000) == Decimal("1.5")
    assert credits_to_usd(250, credits_per_dollar=1000) == Decimal("0.25")


def test_usd_to_credits_rounds_half_up() -> None:
    assert usd_to_credits("2") == 2_000_000
    assert usd_to_credits("0.0000005") == 1
    assert usd_to_credits("0.0000004") == 0
    assert usd_to_credits(0.25, credits_per_dollar=100) == 25


def test_format_credits() -> None:
    assert format_credits(1_500_000) == "1.5M"
    assert format_credits(3_400) == "3.4K"
    assert format_credits(999) == "999"
    assert format_credits(0) == "0"
