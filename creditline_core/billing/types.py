# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors
"""Pricing policy types for credits-based billing."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class ModelPrice:
    """USD pricing per 1M tokens for a specific model."""

    usd_per_million_input: float
    usd_per_million_output: float
    usd_per_million_cached_input: float | None = None
    usd_per_million_reasoning: float | None = None


@dataclass(frozen=True, slots=True)
class CreditPricingPolicy:
    """Single source of truth for credit pricing."""

    credits_per_dollar: int = 1_000_000
    fallback_usd_per_million_tokens: float = 5.0
    llm_prices: dict[str, ModelPrice] = field(default_factory=dict)

    def get_model_price(self, model: str) -> ModelPrice | None:
        # 1. Exact match
        if model in self.llm_prices:
            return self.llm_prices[model]

        # 2. Longest prefix match (e.g. gpt-4o-2024-08-06 -> gpt-4o)
        best_match = None
        for known_model in self.llm_prices:
            if model.startswith(known_model):
                if best_match is None or len(known_model) > len(best_match):
                    best_match = known_model

        if best_match:
            return self.llm_prices[best_match]

        return None


@dataclass(frozen=True, slots=True)
class CostQuote:
    """Priced usage: whole credits to charge and the USD estimate behind them."""

    credits: int
    cost_usd: Decimal
    model: str | None = None
    fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "credits": self.credits,
            "cost_usd": str(self.cost_usd),
            "model": self.model,
            "fallback": self.fallback,
        }
