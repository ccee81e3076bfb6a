# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors
"""Pricing, usage validation and the billing orchestrator."""

from creditline_core.billing.config_loader import load_pricing_policy
from creditline_core.billing.conversion import credits_to_usd, format_credits, usd_to_credits
from creditline_core.billing.orchestrator import (
    BillingOrchestrator,
    CostCheck,
    ExpirationWarning,
    WalletSummary,
)
from creditline_core.billing.pricing import PricingFunction, compute_chat_cost, fallback_cost
from creditline_core.billing.types import CostQuote, CreditPricingPolicy, ModelPrice
from creditline_core.billing.usage import UsageMetrics, parse_usage_metrics

__all__ = [
    "BillingOrchestrator",
    "CostCheck",
    "ExpirationWarning",
    "WalletSummary",
    "CostQuote",
    "CreditPricingPolicy",
    "ModelPrice",
    "PricingFunction",
    "compute_chat_cost",
    "fallback_cost",
    "UsageMetrics",
    "parse_usage_metrics",
    "credits_to_usd",
    "usd_to_credits",
    "format_credits",
    "load_pricing_policy",
]
