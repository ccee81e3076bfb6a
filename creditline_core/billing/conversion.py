# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors
"""Credit <-> USD helpers for display and estimates."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

DEFAULT_CREDITS_PER_DOLLAR = 1_000_000


def credits_to_usd(credits: int, credits_per_dollar: int = DEFAULT_CREDITS_PER_DOLLAR) -> Decimal:
    return Decimal(credits) / Decimal(credits_per_dollar)


def usd_to_credits(usd: Decimal | float | str, credits_per_dollar: int = DEFAULT_CREDITS_PER_DOLLAR) -> int:
    """Nearest whole credit amount for `usd` (half rounds up)."""
    value = Decimal(str(usd)) * Decimal(credits_per_dollar)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_credits(credits: int) -> str:
    """Compact label: 1.2M, 3.4K, or the plain grouped number below a thousand."""
    if credits >= 1_000_000:
        return f"{credits / 1_000_000:.1f}M"
    if credits >= 1_000:
        return f"{credits / 1_000:.1f}K"
    return f"{credits:,}"
