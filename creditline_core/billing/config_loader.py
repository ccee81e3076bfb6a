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
"""Pricing policy configuration loader."""

from __future__ import annotations

import json
import os
from pathlib import Path

from creditline_core.billing.types import CreditPricingPolicy, ModelPrice


def load_pricing_policy(config_path: str | Path | None = None) -> CreditPricingPolicy:
    """
    Load pricing policy from JSON file with ENV overrides.

    Priority (highest to lowest):
    1. Environment variables (CREDITLINE_*)
    2. Provided config_path
    3. Default pricing JSON

    Args:
        config_path: Optional path to custom pricing config JSON

    Returns:
        CreditPricingPolicy instance
    """
    # Load base config from file
    if config_path:
        with open(config_path) as f:
            data = json.load(f)
    else:
        default_path = Path(__file__).parent / "default_pricing.json"
        if default_path.exists():
            with open(default_path) as f:
                data = json.load(f)
        else:
            data = {}

    # Apply ENV overrides
    credits_per_dollar = int(
        os.environ.get(
            "CREDITLINE_CREDITS_PER_DOLLAR",
            data.get("credits_per_dollar", 1_000_000),
        )
    )
    fallback_rate = float(
        os.environ.get(
            "CREDITLINE_FALLBACK_USD_PER_MILLION_TOKENS",
            data.get("fallback_usd_per_million_tokens", 5.0),
        )
    )

    # Parse LLM prices
    llm_prices_raw = data.get("llm_prices", {})
    llm_prices = {}
    for model_name, prices in llm_prices_raw.items():
        llm_prices[model_name] = ModelPrice(
            usd_per_million_input=prices.get("usd_per_million_input", 0.0),
            usd_per_million_output=prices.get("usd_per_million_output", 0.0),
            usd_per_million_cached_input=prices.get("usd_per_million_cached_input"),
            usd_per_million_reasoning=prices.get("usd_per_million_reasoning"),
        )

    return CreditPricingPolicy(
        credits_per_dollar=credits_per_dollar,
        fallback_usd_per_million_tokens=fallback_rate,
        llm_prices=llm_prices,
    )
