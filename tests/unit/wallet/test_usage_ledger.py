# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for idempotent usage recording, refunds and history."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from creditline_core.wallet.errors import (
    IdempotencyError,
    InvalidUsageDataError,
    LedgerStatusError,
    UsageNotFoundError,
)
from creditline_core.wallet.ledger import (
    UsageLedgerEntry,
    UsageRecordRequest,
    UsageStatus,
    build_usage_idempotency_key,
    ledger_document_id,
)
from creditline_core.wallet.services.store import UsageOutcome
from creditline_core.wallet.types import CreditSource, InsufficientCredits, UsageFilters

FIXED_NOW = datetime(2025, 3, 10, tzinfo=timezone.utc)


def _request(user_id="u1", credits=100, key="msg-1", **overrides) -> UsageRecordRequest:
    fields = dict(
        user_id=user_id,
        provider="openai",
        model="gpt-4o",
        credits=credits,
        cost_estimate=Decimal("0.0001"),
        idempotency_key=key,
        usage_metrics={"total_tokens": 40},
        message_id="m-1",
    )
    fields.update(overrides)
    return UsageRecordRequest(**fields)


class TestRecordUsage:
    def test_records_completed_entry_and_deducts(self, engine, seed_wallet, store):
        seed_wallet("u1", free=500, package=60)

        outcome = engine.record_usage(_request(credits=100))

        assert isinstance(outcome, UsageOutcome)
        assert outcome.replayed is False
        entry = outcome.entry
        assert entry.status == UsageStatus.COMPLETED
        assert entry.source == CreditSource.PACKAGE
        assert entry.drawn == {CreditSource.PACKAGE: 60, CreditSource.FREE: 40}
        assert outcome.balance.total_credits == 460
        assert store.find_usage("msg-1") == entry

    def test_same_key_twice_charges_once(self, engine, seed_wallet, store):
        seed_wallet("u1", free=500)

        first = engine.record_usage(_request())
        second = engine.record_usage(_request())

        assert second.replayed is True
        assert second.entry == first.entry
        assert engine.get_balance("u1").total_credits == 400
        assert len(store.list_usage("u1")) == 1

    def test_replay_ignores_changed_amount(self, engine, seed_wallet):
        seed_wallet("u1", free=500)
        engine.record_usage(_request(credits=100))

        replay = engine.record_usage(_request(credits=300))

        assert replay.replayed is True
        assert replay.entry.credits == 100
        assert engine.get_balance("u1").total_credits == 400

    def test_unaffordable_writes_nothing_and_frees_key(self, engine, seed_wallet, store):
        seed_wallet("u1", free=50)

        refused = engine.record_usage(_request(credits=100))

        assert isinstance(refused, InsufficientCredits)
        assert refused.required == 100
        assert refused.available == 50
        assert store.find_usage("msg-1") is None
        assert engine.get_balance("u1").total_credits == 50

        # Retry with the same key after a top-up succeeds.
        seed_wallet("u1", package=100)
        retried = engine.record_usage(_request(credits=100))
        assert isinstance(retried, UsageOutcome)
        assert retried.replayed is False

    def test_concurrent_duplicates_charge_once(self, engine, seed_wallet, store):
        seed_wallet("u1", free=10_000)

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda _: engine.record_usage(_request(credits=250)), range(16)))

        assert sum(1 for o in outcomes if not o.replayed) == 1
        assert len({o.entry.id for o in outcomes}) == 1
        assert engine.get_balance("u1").total_credits == 9_750
        assert len(store.list_usage("u1")) == 1

    def test_key_is_global_across_users(self, engine, seed_wallet, store):
        seed_wallet("u1", free=500)
        seed_wallet("u2", free=500)

        engine.record_usage(_request(user_id="u1", key="shared"))
        replay = engine.record_usage(_request(user_id="u2", key="shared"))

        assert replay.replayed is True
        assert replay.entry.user_id == "u1"
        assert engine.get_balance("u2").total_credits == 500

    @pytest.mark.parametrize(
        "overrides",
        [
            {"credits": 0},
            {"credits": -1},
            {"key": ""},
            {"cost_estimate": Decimal("-0.5")},
        ],
    )
    def test_invalid_requests_raise_before_write(self, engine, seed_wallet, store, overrides):
        seed_wallet("u1", free=500)

        with pytest.raises(InvalidUsageDataError):
            engine.record_usage(_request(**overrides))
        assert store.list_usage("u1") == []

    def test_usage_key_is_stable_for_message(self):
        key = build_usage_idempotency_key("u1", "m-42")
        assert key == build_usage_idempotency_key("u1", "m-42")
        assert key != build_usage_idempotency_key("u1", "m-43")
        assert len(ledger_document_id(key)) == 64


class TestRefund:
    def test_refund_restores_drawn_buckets(self, engine, seed_wallet, store):
        seed_wallet("u1", free=500, package=60)
        engine.record_usage(_request(credits=100))

        outcome = engine.refund_usage("msg-1", reason="model error")

        assert outcome.entry.status == UsageStatus.REFUNDED
        assert outcome.balance.package_credits == 60
        assert outcome.balance.free_credits == 500
        assert store.find_usage("msg-1").status == UsageStatus.REFUNDED

    def test_second_refund_is_replay(self, engine, seed_wallet):
        seed_wallet("u1", free=500)
        engine.record_usage(_request(credits=100))

        engine.refund_usage("msg-1")
        again = engine.refund_usage("msg-1")

        assert again.replayed is True
        assert engine.get_balance("u1").total_credits == 500

    def test_refund_unknown_key(self, engine):
        with pytest.raises(UsageNotFoundError):
            engine.refund_usage("nope")

    def test_refund_pending_entry_is_rejected(self, engine, seed_wallet, store):
        seed_wallet("u1", free=500)
        pending = _request(key="imported").to_pending_entry(created_at=engine.now())
        store.write_usage_entry(pending)

        with pytest.raises(LedgerStatusError):
            engine.refund_usage("imported")
        assert engine.get_balance("u1").total_credits == 500

    def test_status_never_regresses(self):
        entry = _request().to_pending_entry(created_at=FIXED_NOW).transition(UsageStatus.COMPLETED)
        with pytest.raises(LedgerStatusError):
            entry.transition(UsageStatus.PENDING)
        with pytest.raises(LedgerStatusError):
            entry.transition(UsageStatus.REFUNDED).transition(UsageStatus.COMPLETED)


class TestRawLedgerWrites:
    def test_duplicate_raw_insert_is_rejected(self, store):
        entry = UsageLedgerEntry(
            idempotency_key="k1",
            user_id="u1",
            provider="openai",
            model="gpt-4o",
            credits=5,
            cost_estimate=Decimal("0"),
            source=CreditSource.FREE,
        )
        store.write_usage_entry(entry)
        with pytest.raises(IdempotencyError):
            store.write_usage_entry(entry)


class TestRenewFreeCredits:
    def test_tops_up_to_allowance(self, engine, seed_wallet, store, clock):
        seed_wallet("u1", free=30, package=10)

        balance = engine.renew_free_credits("u1", 100)

        assert balance.free_credits == 100
        assert balance.package_credits == 10
        assert balance.free_reset_at.month == 4
        assert store.list_grants("u1")[-1].credits == 70

    def test_no_grant_when_at_allowance(self, engine, seed_wallet, store):
        seed_wallet("u1", free=150)
        grants_before = len(store.list_grants("u1"))

        balance = engine.renew_free_credits("u1", 100)

        assert balance.free_credits == 150
        assert balance.free_reset_at is not None
        assert len(store.list_grants("u1")) == grants_before

    def test_renewal_stays_reconcilable(self, engine, seed_wallet):
        seed_wallet("u1", free=100)
        engine.record_usage(_request(credits=80))
        engine.renew_free_credits("u1", 100)

        assert engine.reconcile("u1").is_consistent is True


class TestUsageHistory:
    def _record_series(self, engine, clock):
        base = clock.now
        for i, (provider, model) in enumerate(
            [("openai", "gpt-4o"), ("anthropic", "claude-3-5-sonnet"), ("openai", "gpt-4o-mini")] * 3
        ):
            clock.now = base + timedelta(minutes=i)
            engine.record_usage(_request(credits=10 + i, key=f"k-{i}", provider=provider, model=model))
        clock.now = base

    def test_newest_first_with_pagination(self, engine, seed_wallet, clock):
        seed_wallet("u1", free=10_000)
        self._record_series(engine, clock)

        page = engine.get_usage_history("u1", UsageFilters(page=1, page_size=4))

        assert page.total == 9
        assert page.total_pages == 3
        assert [e.idempotency_key for e in page.entries] == ["k-8", "k-7", "k-6", "k-5"]
        assert page.summary.total_credits == sum(10 + i for i in range(9))
        assert page.summary.total_tokens == 9 * 40

    def test_filters_by_provider_and_model(self, engine, seed_wallet, clock):
        seed_wallet("u1", free=10_000)
        self._record_series(engine, clock)

        page = engine.get_usage_history("u1", UsageFilters(provider="openai", model="gpt-4o"))

        assert page.total == 3
        assert page.summary.by_model == {"gpt-4o": {"credits": 10 + 13 + 16, "count": 3}}

    def test_filters_by_date_and_status(self, engine, seed_wallet, clock):
        seed_wallet("u1", free=10_000)
        self._record_series(engine, clock)
        engine.refund_usage("k-0")

        refunded = engine.get_usage_history("u1", UsageFilters(status="refunded"))
        recent = engine.get_usage_history("u1", UsageFilters(start_date=clock.now + timedelta(minutes=7)))

        assert [e.idempotency_key for e in refunded.entries] == ["k-0"]
        assert recent.total == 2

    def test_naive_date_bounds_are_read_as_utc(self, engine, seed_wallet, clock):
        seed_wallet("u1", free=10_000)
        self._record_series(engine, clock)

        since = datetime.fromisoformat("2025-03-10T12:07:00")
        until = datetime.fromisoformat("2025-03-01")

        recent = engine.get_usage_history("u1", UsageFilters(start_date=since))
        before = engine.get_usage_history("u1", UsageFilters(end_date=until))

        assert [e.idempotency_key for e in recent.entries] == ["k-8", "k-7"]
        assert before.total == 0

    def test_empty_history(self, engine):
        page = engine.get_usage_history("nobody")
        assert page.total == 0
        assert page.total_pages == 0
        assert page.entries == []
