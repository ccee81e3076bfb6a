# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Billing Orchestrator.

Coordinates pricing and the wallet engine for request handlers: wallet
summaries for display, cost estimation with an affordability pre-check, and
final usage recording.
"""

from __future__ import annotations

import functools
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping

from creditline_core.billing.conversion import credits_to_usd, format_credits
from creditline_core.billing.pricing import PricingFunction, compute_chat_cost, fallback_cost
from creditline_core.billing.types import CostQuote, CreditPricingPolicy, ModelPrice
from creditline_core.billing.usage import UsageMetrics, parse_usage_metrics
from creditline_core.wallet.errors import InvalidUsageDataError
from creditline_core.wallet.ledger import UsageRecordRequest, build_usage_idempotency_key
from creditline_core.wallet.services.engine import WalletEngine, next_reset_date
from creditline_core.wallet.services.store import UsageOutcome
from creditline_core.wallet.types import (
    AffordabilityResult,
    CreditGrant,
    CreditReason,
    CreditSource,
    InsufficientCredits,
    PaginatedUsage,
    ReconciliationResult,
    UsageFilters,
    WalletBalance,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


@dataclass(frozen=True, slots=True)
class ExpirationWarning:
    source: CreditSource
    credits: int
    expires_at: datetime
    days_until_expiry: int

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "credits": self.credits,
            "expires_at": self.expires_at.isoformat(),
            "days_until_expiry": self.days_until_expiry,
        }


@dataclass(frozen=True, slots=True)
class WalletSummary:
    """Wallet row enriched for display."""
    balance: WalletBalance
    next_reset_date: datetime | None
    is_low_balance: bool
    estimated_usd: Decimal
    low_balance_warning: str | None = None
    expiration_warnings: tuple[ExpirationWarning, ...] = ()

    @property
    def total_credits(self) -> int:
        return self.balance.total_credits

    def to_dict(self) -> dict:
        return {
            **self.balance.to_dict(),
            "next_reset_date": self.next_reset_date.isoformat() if self.next_reset_date else None,
            "is_low_balance": self.is_low_balance,
            "low_balance_warning": self.low_balance_warning,
            "estimated_usd": str(self.estimated_usd),
            "expiration_warnings": [w.to_dict() for w in self.expiration_warnings],
        }


@dataclass(frozen=True, slots=True)
class CostCheck:
    quote: CostQuote
    affordability: AffordabilityResult
    usage: UsageMetrics | None = field(default=None, compare=False)

    @property
    def can_afford(self) -> bool:
        return self.affordability.can_afford

    def to_dict(self) -> dict:
        return {
            "quote": self.quote.to_dict(),
            "affordability": self.affordability.to_dict(),
        }


def low_balance_warning(total_credits: int, threshold: int) -> str | None:
    if total_credits >= threshold:
        return None
    if total_credits == 0:
        return "Your balance is empty. Top up to continue."
    return (
        f"Your balance is low ({format_credits(total_credits)} remaining). "
        f"Consider topping up to avoid interruptions."
    )


def days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / SECONDS_PER_DAY)


class BillingOrchestrator:
    def __init__(
        self,
        *,
        engine: WalletEngine,
        policy: CreditPricingPolicy | None = None,
        pricing_fn: PricingFunction | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._policy = policy or CreditPricingPolicy()
        self._pricing_fn = pricing_fn or functools.partial(
            compute_chat_cost,
            credits_per_dollar=self._policy.credits_per_dollar,
        )
        self._clock = clock or engine.now

    @property
    def engine(self) -> WalletEngine:
        return self._engine

    @property
    def policy(self) -> CreditPricingPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    def get_wallet_summary(self, user_id: str) -> WalletSummary:
        config = self._engine.config
        balance = self._engine.get_balance(user_id)
        now = self._clock()
        total = balance.total_credits
        return WalletSummary(
            balance=balance,
            next_reset_date=balance.free_reset_at or next_reset_date(now, config.default_reset_day),
            is_low_balance=total < config.low_balance_threshold,
            low_balance_warning=low_balance_warning(total, config.low_balance_threshold),
            estimated_usd=credits_to_usd(total, self._policy.credits_per_dollar),
            expiration_warnings=self._expiration_warnings(balance, now),
        )

    def _expiration_warnings(self, balance: WalletBalance, now: datetime) -> tuple[ExpirationWarning, ...]:
        window = self._engine.config.expiration_notification_days
        candidates = (
            (CreditSource.FREE, balance.free_credits, balance.free_reset_at),
            (CreditSource.SUBSCRIPTION, balance.subscription_credits, balance.subscription_period_end),
        )
        warnings = []
        for source, credits, expires_at in candidates:
            if credits <= 0 or expires_at is None:
                continue
            days = days_until(expires_at, now)
            if days <= window:
                warnings.append(
                    ExpirationWarning(source=source, credits=credits, expires_at=expires_at, days_until_expiry=days)
                )
        return tuple(warnings)

    # -------------------------------------------------------------------------
    # Pricing
    # -------------------------------------------------------------------------

    def quote(self, usage: UsageMetrics, pricing_model: ModelPrice | str | None) -> CostQuote:
        """
        Price `usage`, falling back to the flat per-token rate when the model
        is unknown or the pricing function fails.

        Any token usage costs at least one credit.
        """
        model_name = pricing_model if isinstance(pricing_model, str) else None
        price = self._resolve_price(pricing_model)

        quote = None
        if price is not None:
            try:
                quote = self._pricing_fn(usage, price)
            except Exception as exc:  # noqa: BLE001
                logger.warning("[BILLING] Pricing failed for %s, using fallback rate: %s", model_name or "model", exc)
        else:
            logger.warning("[BILLING] No price for %s, using fallback rate", model_name or "model")

        if quote is None:
            quote = fallback_cost(
                usage,
                usd_per_million_tokens=self._policy.fallback_usd_per_million_tokens,
                credits_per_dollar=self._policy.credits_per_dollar,
            )

        if quote.credits < 1 and (usage.total_tokens or 0) > 0:
            quote = replace(quote, credits=1)
        return replace(quote, model=model_name or quote.model)

    def _resolve_price(self, pricing_model: ModelPrice | str | None) -> ModelPrice | None:
        if isinstance(pricing_model, ModelPrice):
            return pricing_model
        if pricing_model:
            return self._policy.get_model_price(pricing_model)
        return None

    def estimate_and_check(
        self,
        user_id: str,
        raw_usage_metrics: UsageMetrics | Mapping[str, Any],
        pricing_model: ModelPrice | str | None,
        *,
        buffer_multiplier: Decimal | float | None = None,
    ) -> CostCheck:
        """Price the estimated usage and run the buffered affordability pre-check."""
        usage = parse_usage_metrics(raw_usage_metrics)
        quote = self.quote(usage, pricing_model)
        affordability = self._engine.can_afford(user_id, quote.credits, buffer_multiplier)
        logger.debug(
            "[BILLING] Estimate for %s: %d credits (fallback=%s) can_afford=%s",
            user_id,
            quote.credits,
            quote.fallback,
            affordability.can_afford,
        )
        return CostCheck(quote=quote, affordability=affordability, usage=usage)

    # -------------------------------------------------------------------------
    # Recording and delegations
    # -------------------------------------------------------------------------

    def record_usage(
        self,
        user_id: str,
        *,
        provider: str,
        model: str,
        usage: UsageMetrics | Mapping[str, Any],
        idempotency_key: str | None = None,
        message_id: str | None = None,
        session_id: str | None = None,
        pricing_model: ModelPrice | str | None = None,
    ) -> UsageOutcome | InsufficientCredits:
        """
        Price the final usage and charge it exactly once.

        The idempotency key defaults to one derived from `message_id`; a call
        with neither is rejected.
        """
        metrics = parse_usage_metrics(usage)
        if not idempotency_key:
            if not message_id:
                raise InvalidUsageDataError("idempotency_key or message_id is required")
            idempotency_key = build_usage_idempotency_key(user_id, message_id)

        quote = self.quote(metrics, pricing_model if pricing_model is not None else model)
        request = UsageRecordRequest(
            user_id=user_id,
            provider=provider,
            model=model,
            credits=quote.credits,
            cost_estimate=quote.cost_usd,
            idempotency_key=idempotency_key,
            usage_metrics=metrics.to_payload(),
            session_id=session_id,
            message_id=message_id,
        )
        return self._engine.record_usage(request)

    def grant_credits(
        self,
        user_id: str,
        credits: int,
        source: CreditSource | str,
        reason: CreditReason | str,
        **opts: Any,
    ) -> CreditGrant:
        return self._engine.grant(user_id, credits, source, reason, **opts)

    def reconcile_wallet(self, user_id: str) -> ReconciliationResult:
        return self._engine.reconcile(user_id)

    def get_usage_history(self, user_id: str, filters: UsageFilters | None = None) -> PaginatedUsage:
        return self._engine.get_usage_history(user_id, filters)
