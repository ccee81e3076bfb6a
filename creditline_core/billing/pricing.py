# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors
"""Cost model for metered model calls.

USD amounts are Decimal; the conversion to whole credits rounds up once, at
the end, so a call is never charged less than it cost.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable

from creditline_core.billing.types import CostQuote, ModelPrice
from creditline_core.billing.usage import UsageMetrics
from creditline_core.wallet.types import ceil_credits

MILLION = Decimal(1_000_000)

# (usage, price) -> quote. Any exception means "could not price" and triggers
# the orchestrator's fallback rate.
PricingFunction = Callable[[UsageMetrics, ModelPrice], CostQuote]


def _rate(value: float | None) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def usd_to_credit_units(usd: Decimal, credits_per_dollar: int) -> int:
    return ceil_credits(usd * Decimal(credits_per_dollar))


def compute_chat_cost(
    usage: UsageMetrics,
    price: ModelPrice,
    *,
    credits_per_dollar: int = 1_000_000,
) -> CostQuote:
    """
    Price one chat completion.

    Cached input tokens use the cached rate when the model has one, otherwise
    the regular input rate. Reasoning tokens are billed at the reasoning rate
    when set and at the output rate otherwise.
    """
    cached = min(usage.cached_input_tokens, usage.input_tokens)
    uncached = usage.input_tokens - cached
    cached_rate = price.usd_per_million_cached_input
    if cached_rate is None:
        cached_rate = price.usd_per_million_input

    reasoning = min(usage.reasoning_tokens, usage.output_tokens)
    if price.usd_per_million_reasoning is None:
        plain_output, reasoning = usage.output_tokens, 0
    else:
        plain_output = usage.output_tokens - reasoning

    usd = (
        Decimal(uncached) * _rate(price.usd_per_million_input)
        + Decimal(cached) * _rate(cached_rate)
        + Decimal(plain_output) * _rate(price.usd_per_million_output)
        + Decimal(reasoning) * _rate(price.usd_per_million_reasoning)
    ) / MILLION

    return CostQuote(credits=usd_to_credit_units(usd, credits_per_dollar), cost_usd=usd)


def fallback_cost(
    usage: UsageMetrics,
    *,
    usd_per_million_tokens: float,
    credits_per_dollar: int,
) -> CostQuote:
    """Flat per-token rate used when the real cost model is unavailable."""
    usd = Decimal(usage.total_tokens or 0) * _rate(usd_per_million_tokens) / MILLION
    return CostQuote(
        credits=usd_to_credit_units(usd, credits_per_dollar),
        cost_usd=usd,
        fallback=True,
    )
