# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from creditline_core.billing.orchestrator import BillingOrchestrator, days_until, low_balance_warning
from creditline_core.billing.types import CreditPricingPolicy, ModelPrice
from creditline_core.wallet.errors import InvalidUsageDataError
from creditline_core.wallet.ledger import build_usage_idempotency_key
from creditline_core.wallet.services.store import UsageOutcome
from creditline_core.wallet.types import CreditReason, CreditSource, InsufficientCredits

GPT4O = ModelPrice(usd_per_million_input=2.5, usd_per_million_output=10.0, usd_per_million_cached_input=1.25)
MINI = ModelPrice(usd_per_million_input=0.15, usd_per_million_output=0.6)

# 600 * 2.5 + 400 * 1.25 + 500 * 10 = 7000 credits on GPT4O
USAGE = {"totalInputTokens": 1000, "inputCachedTokens": 400, "totalOutputTokens": 500}


@pytest.fixture
def policy():
    return CreditPricingPolicy(llm_prices={"gpt-4o": GPT4O, "gpt-4o-mini": MINI})


@pytest.fixture
def billing(engine, policy):
    return BillingOrchestrator(engine=engine, policy=policy)


class TestWalletSummary:
    def test_empty_wallet(self, billing):
        summary = billing.get_wallet_summary("new-user")

        assert summary.total_credits == 0
        assert summary.is_low_balance is True
        assert summary.low_balance_warning == "Your balance is empty. Top up to continue."
        assert summary.estimated_usd == Decimal("0")
        assert summary.next_reset_date == datetime(2025, 4, 1, tzinfo=timezone.utc)

    def test_low_balance_warning(self, billing, seed_wallet):
        seed_wallet("u1", package=500)

        summary = billing.get_wallet_summary("u1")

        assert summary.is_low_balance is True
        assert summary.low_balance_warning == (
            "Your balance is low (500 remaining). Consider topping up to avoid interruptions."
        )

    def test_healthy_balance(self, billing, seed_wallet):
        seed_wallet("u1", free=2_000, package=3_000)

        summary = billing.get_wallet_summary("u1")

        assert summary.is_low_balance is False
        assert summary.low_balance_warning is None
        assert summary.estimated_usd == Decimal("0.005")
        assert summary.to_dict()["total_credits"] == 5_000

    def test_expiring_subscription_is_flagged(self, billing, engine, clock):
        engine.grant(
            "u1",
            3_000,
            CreditSource.SUBSCRIPTION,
            CreditReason.SUBSCRIPTION_RENEWAL,
            expires_at=clock.now + timedelta(days=3),
        )
        engine.renew_free_credits("u1", 500)

        warnings = billing.get_wallet_summary("u1").expiration_warnings

        # Free credits reset on 2025-04-01, outside the notification window.
        assert [w.source for w in warnings] == [CreditSource.SUBSCRIPTION]
        assert warnings[0].credits == 3_000
        assert warnings[0].days_until_expiry == 3

    def test_naive_expiry_does_not_break_summary(self, billing, engine):
        engine.grant(
            "u1",
            3_000,
            CreditSource.SUBSCRIPTION,
            CreditReason.SUBSCRIPTION_RENEWAL,
            expires_at=datetime.fromisoformat("2025-03-12T12:00:00"),
        )

        warnings = billing.get_wallet_summary("u1").expiration_warnings

        assert [w.days_until_expiry for w in warnings] == [2]

    def test_helpers(self):
        now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert days_until(now + timedelta(hours=30), now) == 2
        assert low_balance_warning(1_000, 1_000) is None
        assert low_balance_warning(1_500, 2_000) == (
            "Your balance is low (1.5K remaining). Consider topping up to avoid interruptions."
        )


class TestEstimateAndCheck:
    def test_known_model_with_buffer(self, billing, seed_wallet):
        seed_wallet("u1", package=8_000)

        check = billing.estimate_and_check("u1", USAGE, "gpt-4o")

        assert check.quote.credits == 7_000
        assert check.quote.fallback is False
        assert check.quote.model == "gpt-4o"
        assert check.affordability.required == 8_400
        assert check.can_afford is False
        assert check.affordability.message == (
            "Insufficient credits. You have 8000 but need 8400 (including safety buffer)."
        )

    def test_affordable_estimate(self, billing, seed_wallet):
        seed_wallet("u1", package=10_000)

        check = billing.estimate_and_check("u1", USAGE, "gpt-4o-2024-08-06")

        assert check.can_afford is True
        assert check.usage.total_tokens == 1_500

    def test_explicit_price_object(self, billing, seed_wallet):
        seed_wallet("u1", package=10_000)

        check = billing.estimate_and_check("u1", USAGE, MINI, buffer_multiplier=1)

        # 1000 * 0.15 + 500 * 0.6 = 450
        assert check.quote.credits == 450
        assert check.quote.model is None
        assert check.affordability.required == 450

    def test_unknown_model_uses_fallback_rate(self, billing, seed_wallet, caplog):
        seed_wallet("u1", package=100_000)

        with caplog.at_level(logging.WARNING, logger="creditline_core.billing.orchestrator"):
            check = billing.estimate_and_check("u1", USAGE, "mystery-model")

        # 1500 tokens at 5 USD per 1M
        assert check.quote.credits == 7_500
        assert check.quote.fallback is True
        assert check.quote.model == "mystery-model"
        assert "No price for mystery-model" in caplog.text

    def test_failing_pricing_function_uses_fallback(self, engine, policy, seed_wallet):
        def _broken(usage, price):
            raise ZeroDivisionError("bad table")

        billing = BillingOrchestrator(engine=engine, policy=policy, pricing_fn=_broken)
        seed_wallet("u1", package=100_000)

        check = billing.estimate_and_check("u1", USAGE, "gpt-4o")

        assert check.quote.fallback is True
        assert check.quote.credits == 7_500

    def test_any_usage_costs_at_least_one_credit(self, billing, seed_wallet):
        seed_wallet("u1", package=10)

        check = billing.estimate_and_check("u1", {"totalTokens": 1}, "gpt-4o-mini")

        assert check.quote.credits == 1

    def test_invalid_usage_rejected(self, billing):
        with pytest.raises(InvalidUsageDataError):
            billing.estimate_and_check("u1", {"totalTokens": 0}, "gpt-4o")


class TestRecordUsage:
    def test_message_id_derives_key_and_charges_once(self, billing, engine, seed_wallet):
        seed_wallet("u1", free=100_000)

        first = billing.record_usage("u1", provider="openai", model="gpt-4o", usage=USAGE, message_id="m-1")
        second = billing.record_usage("u1", provider="openai", model="gpt-4o", usage=USAGE, message_id="m-1")

        assert isinstance(first, UsageOutcome)
        assert first.entry.idempotency_key == build_usage_idempotency_key("u1", "m-1")
        assert first.entry.credits == 7_000
        assert first.entry.cost_estimate == Decimal("0.007")
        assert first.entry.usage_metrics["total_tokens"] == 1_500
        assert second.replayed is True
        assert engine.get_balance("u1").total_credits == 93_000

    def test_pricing_model_override(self, billing, seed_wallet):
        seed_wallet("u1", free=100_000)

        outcome = billing.record_usage(
            "u1",
            provider="azure",
            model="my-deployment",
            usage=USAGE,
            idempotency_key="req-1",
            pricing_model="gpt-4o-mini",
        )

        assert outcome.entry.model == "my-deployment"
        assert outcome.entry.credits == 450

    def test_unaffordable_usage_is_refused(self, billing, seed_wallet):
        seed_wallet("u1", free=100)

        result = billing.record_usage("u1", provider="openai", model="gpt-4o", usage=USAGE, idempotency_key="k")

        assert isinstance(result, InsufficientCredits)
        assert result.required == 7_000

    def test_key_or_message_id_required(self, billing):
        with pytest.raises(InvalidUsageDataError):
            billing.record_usage("u1", provider="openai", model="gpt-4o", usage=USAGE)

    def test_delegations(self, billing):
        billing.grant_credits("u1", 250, CreditSource.PACKAGE, CreditReason.PURCHASE)

        assert billing.reconcile_wallet("u1").is_consistent is True
        assert billing.get_usage_history("u1").total == 0
