# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Wallet Engine.

Grants, prioritized deductions, affordability pre-checks, idempotent usage
recording and reconciliation on top of a WalletStore.

Every mutation is one `store.commit` scoped to the user's wallet row, so the
read of the current balance and the write of the new one are atomic.
Insufficient credits is returned as an InsufficientCredits value, never
raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from creditline_core.wallet.config import WalletConfig
from creditline_core.wallet.errors import (
    InsufficientCreditsError,
    InvalidUsageDataError,
    UsageNotFoundError,
    WalletNotFoundError,
)
from creditline_core.wallet.ledger import UsageLedgerEntry, UsageRecordRequest, UsageStatus
from creditline_core.wallet.services.drawdown import apply_grant, apply_plan, plan_deduction, restore_drawn
from creditline_core.wallet.services.history import paginate_usage
from creditline_core.wallet.services.reconciliation import compute_reconciliation
from creditline_core.wallet.services.store import UsageOutcome, WalletMutation, WalletStore
from creditline_core.wallet.types import (
    AffordabilityResult,
    CreditGrant,
    CreditReason,
    CreditSource,
    DeductionResult,
    InsufficientCredits,
    PaginatedUsage,
    ReconciliationResult,
    UsageFilters,
    WalletBalance,
    as_utc,
    ceil_credits,
    utcnow,
)

logger = logging.getLogger(__name__)


def next_reset_date(now: datetime, reset_day: int) -> datetime:
    """`reset_day` of the month after `now`, at midnight in `now`'s timezone."""
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    return now.replace(year=year, month=month, day=reset_day, hour=0, minute=0, second=0, microsecond=0)


def _require_positive_credits(credits: int, *, what: str = "credits") -> int:
    if isinstance(credits, bool) or not isinstance(credits, int):
        raise InvalidUsageDataError(f"{what} must be an integer, got {type(credits).__name__}")
    if credits <= 0:
        raise InvalidUsageDataError(f"{what} must be positive, got {credits}")
    return credits


def _credit_source(source: CreditSource | str) -> CreditSource:
    try:
        return CreditSource(source)
    except ValueError as exc:
        raise InvalidUsageDataError(f"Unknown credit source {source!r}") from exc


def _buffer_multiplier(value: Decimal | float | str) -> Decimal:
    try:
        multiplier = Decimal(str(value))
    except ArithmeticError as exc:
        raise InvalidUsageDataError(f"Buffer multiplier must be a number, got {value!r}") from exc
    if not multiplier.is_finite() or multiplier < 1:
        raise InvalidUsageDataError(f"Buffer multiplier must be at least 1, got {value!r}")
    return multiplier


def _reason_value(reason: CreditReason | str) -> str:
    if isinstance(reason, CreditReason):
        return reason.value
    text = str(reason).strip()
    if not text:
        raise InvalidUsageDataError("Grant reason must not be empty")
    return text


class WalletEngine:
    """
    Core credit ledger operations for one store.

    Usage:
        engine = WalletEngine(store=InMemoryWalletStore(), config=WalletConfig())

        engine.grant("user-1", 5_000, CreditSource.PACKAGE, CreditReason.PURCHASE,
                     external_ref="pay_123")

        result = engine.deduct("user-1", 700)
        if isinstance(result, InsufficientCredits):
            ...
    """

    def __init__(
        self,
        *,
        store: WalletStore,
        config: WalletConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._config = config or WalletConfig()
        self._clock = clock or utcnow

    @property
    def config(self) -> WalletConfig:
        return self._config

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # BALANCE
    # =========================================================================

    def get_balance(self, user_id: str) -> WalletBalance:
        """
        Current wallet row for `user_id`.

        With lazy creation on, a missing wallet is materialized together with
        the initial free-tier grant. Otherwise WalletNotFoundError is raised.
        """
        wallet = self._store.get_wallet(user_id)
        if wallet is not None:
            return wallet
        if not self._config.lazy_create:
            raise WalletNotFoundError(user_id)
        return self._materialize(user_id)

    def _materialize(self, user_id: str) -> WalletBalance:
        now = self.now()
        allowance = self._config.free_tier_credits

        def _create(wallet: Optional[WalletBalance], _existing: Optional[UsageLedgerEntry]) -> Optional[WalletMutation]:
            if wallet is not None:
                return None
            balance = WalletBalance(
                user_id=user_id,
                free_reset_at=next_reset_date(now, self._config.default_reset_day),
                updated_at=now,
            )
            if allowance <= 0:
                return WalletMutation(balance=balance)
            grant = CreditGrant(
                user_id=user_id,
                source=CreditSource.FREE,
                credits=allowance,
                reason=CreditReason.MONTHLY_FREE.value,
                created_at=now,
            )
            return WalletMutation(balance=apply_grant(balance, grant, now=now), grants=(grant,))

        outcome = self._store.commit(user_id, _create)
        if outcome.committed:
            logger.info("[WALLET] Created wallet for %s with %d free credits", user_id, allowance)
        return outcome.balance

    def _current_or_empty(self, user_id: str, wallet: Optional[WalletBalance], now: datetime) -> WalletBalance:
        return wallet if wallet is not None else WalletBalance(user_id=user_id, updated_at=now)

    # =========================================================================
    # GRANT
    # =========================================================================

    def grant(
        self,
        user_id: str,
        credits: int,
        source: CreditSource | str,
        reason: CreditReason | str,
        *,
        expires_at: datetime | None = None,
        external_ref: str | None = None,
        preference_ref: str | None = None,
    ) -> CreditGrant:
        """
        Record a credit grant and add it to the matching bucket atomically.

        A missing wallet row is created with zero balances before the
        increment. Subscription grants carrying `expires_at` move the
        subscription period end.
        """
        credits = _require_positive_credits(credits)
        source = _credit_source(source)
        now = self.now()
        grant = CreditGrant(
            user_id=user_id,
            source=source,
            credits=credits,
            reason=_reason_value(reason),
            expires_at=as_utc(expires_at),
            external_payment_ref=external_ref,
            external_preference_ref=preference_ref,
            created_at=now,
        )

        def _apply(wallet: Optional[WalletBalance], _existing: Optional[UsageLedgerEntry]) -> WalletMutation:
            base = self._current_or_empty(user_id, wallet, now)
            return WalletMutation(balance=apply_grant(base, grant, now=now), grants=(grant,))

        outcome = self._store.commit(user_id, _apply)
        logger.info(
            "[WALLET] Granted %d %s credits to %s (reason=%s, ref=%s) -> total %d",
            credits,
            source.value,
            user_id,
            grant.reason,
            external_ref,
            outcome.balance.total_credits,
        )
        return grant

    def renew_free_credits(self, user_id: str, amount: int | None = None) -> WalletBalance:
        """
        Monthly free-tier reset: top the free bucket up to `amount`.

        The difference is recorded as a monthly_free grant so the wallet stays
        reconstructible from history. `free_reset_at` always advances.
        """
        allowance = self._config.free_tier_credits if amount is None else amount
        if isinstance(allowance, bool) or not isinstance(allowance, int) or allowance < 0:
            raise InvalidUsageDataError(f"Free allowance must be a non-negative integer, got {allowance!r}")
        now = self.now()
        next_reset = next_reset_date(now, self._config.default_reset_day)

        def _renew(wallet: Optional[WalletBalance], _existing: Optional[UsageLedgerEntry]) -> WalletMutation:
            base = self._current_or_empty(user_id, wallet, now)
            top_up = allowance - base.free_credits
            if top_up <= 0:
                return WalletMutation(balance=replace(base, free_reset_at=next_reset, updated_at=now))
            grant = CreditGrant(
                user_id=user_id,
                source=CreditSource.FREE,
                credits=top_up,
                reason=CreditReason.MONTHLY_FREE.value,
                created_at=now,
            )
            balance = replace(apply_grant(base, grant, now=now), free_reset_at=next_reset)
            return WalletMutation(balance=balance, grants=(grant,))

        outcome = self._store.commit(user_id, _renew)
        granted = sum(g.credits for g in outcome.mutation.grants) if outcome.mutation else 0
        logger.info("[WALLET] Renewed free credits for %s (+%d, next reset %s)", user_id, granted, next_reset.date())
        return outcome.balance

    # =========================================================================
    # DEDUCT
    # =========================================================================

    def deduct(
        self,
        user_id: str,
        credits: int,
        *,
        preferred_source: CreditSource | str | None = None,
    ) -> DeductionResult | InsufficientCredits:
        """
        Deduct `credits` following Package -> Subscription -> Free.

        With `preferred_source`, only that bucket is drawn and it must cover
        the whole amount. On shortfall nothing is written and an
        InsufficientCredits value is returned.
        """
        credits = _require_positive_credits(credits)
        preferred = _credit_source(preferred_source) if preferred_source is not None else None
        if self._config.lazy_create:
            self.get_balance(user_id)
        now = self.now()
        # Last mutator run wins; transactional stores may retry it.
        planned: dict = {}

        def _deduct(wallet: Optional[WalletBalance], _existing: Optional[UsageLedgerEntry]) -> WalletMutation:
            base = self._current_or_empty(user_id, wallet, now)
            plan = plan_deduction(base, credits, preferred=preferred)
            planned["plan"] = plan
            return WalletMutation(balance=apply_plan(base, plan, now=now))

        try:
            outcome = self._store.commit(user_id, _deduct)
        except InsufficientCreditsError as exc:
            logger.info("[WALLET] Deduction refused for %s: %s", user_id, exc.result.message)
            return exc.result

        drawn = dict(planned["plan"].drawn)
        logger.info(
            "[WALLET] Deducted %d credits from %s (%s) -> total %d",
            credits,
            user_id,
            ", ".join(f"{b.value}={a}" for b, a in drawn.items()),
            outcome.balance.total_credits,
        )
        return DeductionResult(user_id=user_id, credits=credits, drawn=drawn, balance=outcome.balance)

    # =========================================================================
    # AFFORDABILITY
    # =========================================================================

    def can_afford(
        self,
        user_id: str,
        estimated_credits: int,
        buffer_multiplier: Decimal | float | str | None = None,
    ) -> AffordabilityResult:
        """
        Advisory pre-check: is the balance at least ceil(estimate * buffer)?

        Reserves nothing. A later deduction may still be refused if other
        consumption drains the wallet in between.
        """
        if isinstance(estimated_credits, bool) or not isinstance(estimated_credits, int) or estimated_credits < 0:
            raise InvalidUsageDataError(f"Estimated credits must be a non-negative integer, got {estimated_credits!r}")
        multiplier = (
            self._config.pre_check_buffer_multiplier
            if buffer_multiplier is None
            else _buffer_multiplier(buffer_multiplier)
        )
        required = ceil_credits(Decimal(estimated_credits) * multiplier)
        balance = self.get_balance(user_id)
        available = balance.total_credits
        affordable = available >= required

        message = None
        if not affordable:
            message = (
                f"Insufficient credits. You have {available} but need {required} "
                f"(including safety buffer)."
            )
        return AffordabilityResult(
            can_afford=affordable,
            available=available,
            required=required,
            breakdown=balance.breakdown(),
            message=message,
        )

    # =========================================================================
    # USAGE LEDGER
    # =========================================================================

    def record_usage(self, request: UsageRecordRequest) -> UsageOutcome | InsufficientCredits:
        """
        Charge one consumption event exactly once.

        1. A known idempotency key returns the original entry, no deduction.
        2. An unaffordable request returns InsufficientCredits and writes
           nothing, leaving the key free for a retry after a top-up.
        3. Otherwise the entry is inserted and the wallet debited in one commit.
        """
        _require_positive_credits(request.credits)
        if not request.idempotency_key or not request.idempotency_key.strip():
            raise InvalidUsageDataError("idempotency_key is required")
        if request.cost_estimate < 0:
            raise InvalidUsageDataError(f"cost_estimate cannot be negative, got {request.cost_estimate}")

        existing = self._store.find_usage(request.idempotency_key)
        if existing is not None:
            logger.debug("[WALLET] Idempotent replay for key %s", request.idempotency_key)
            return UsageOutcome(entry=existing, balance=self._store.get_wallet(existing.user_id), replayed=True)

        check = self.can_afford(request.user_id, request.credits, self._config.record_buffer_multiplier)
        if not check.can_afford:
            logger.info(
                "[WALLET] Usage refused for %s: required %d, available %d",
                request.user_id,
                check.required,
                check.available,
            )
            return InsufficientCredits(required=check.required, available=check.available, user_id=request.user_id)

        now = self.now()

        def _record(wallet: Optional[WalletBalance], found: Optional[UsageLedgerEntry]) -> Optional[WalletMutation]:
            if found is not None:
                return None
            base = self._current_or_empty(request.user_id, wallet, now)
            pending = request.to_pending_entry(created_at=now)
            plan = plan_deduction(base, pending.credits)
            completed = pending.transition(UsageStatus.COMPLETED, source=plan.source, drawn=dict(plan.drawn))
            return WalletMutation(balance=apply_plan(base, plan, now=now), new_usage=completed)

        try:
            outcome = self._store.commit(request.user_id, _record, idempotency_key=request.idempotency_key)
        except InsufficientCreditsError as exc:
            logger.info("[WALLET] Usage refused for %s at commit: %s", request.user_id, exc.result.message)
            return exc.result

        if not outcome.committed:
            logger.debug("[WALLET] Idempotent replay at commit for key %s", request.idempotency_key)
            return UsageOutcome(entry=outcome.existing_usage, balance=outcome.balance, replayed=True)

        entry = outcome.mutation.new_usage
        logger.info(
            "[WALLET] Usage recorded for %s: %s/%s %d credits (cost %s USD, source %s)",
            request.user_id,
            entry.provider,
            entry.model,
            entry.credits,
            entry.cost_estimate,
            entry.source.value,
        )
        return UsageOutcome(entry=entry, balance=outcome.balance)

    def refund_usage(self, idempotency_key: str, *, reason: str | None = None) -> UsageOutcome:
        """
        Reverse a completed usage entry, returning its credits to the buckets
        that paid for it. Refunding twice is a replay.
        """
        entry = self._store.find_usage(idempotency_key)
        if entry is None:
            raise UsageNotFoundError(idempotency_key)
        now = self.now()

        def _refund(wallet: Optional[WalletBalance], found: Optional[UsageLedgerEntry]) -> Optional[WalletMutation]:
            if found is None:
                raise UsageNotFoundError(idempotency_key)
            if found.status == UsageStatus.REFUNDED:
                return None
            refunded = found.transition(UsageStatus.REFUNDED)
            base = self._current_or_empty(found.user_id, wallet, now)
            return WalletMutation(
                balance=restore_drawn(base, found.drawn_buckets(), now=now),
                updated_usage=refunded,
            )

        outcome = self._store.commit(entry.user_id, _refund, idempotency_key=idempotency_key)
        if not outcome.committed:
            return UsageOutcome(entry=outcome.existing_usage, balance=outcome.balance, replayed=True)

        logger.info(
            "[WALLET] Refunded %d credits to %s (key %s, reason=%s)",
            entry.credits,
            entry.user_id,
            idempotency_key,
            reason or CreditReason.REFUND.value,
        )
        return UsageOutcome(entry=outcome.mutation.updated_usage, balance=outcome.balance)

    def get_usage_history(self, user_id: str, filters: UsageFilters | None = None) -> PaginatedUsage:
        return paginate_usage(self._store.list_usage(user_id), filters or UsageFilters())

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def reconcile(self, user_id: str) -> ReconciliationResult:
        """
        Compare the wallet row against grants minus completed usage.

        Reads one snapshot and writes nothing; inconsistencies are logged for
        operator follow-up.
        """
        snapshot = self._store.read_snapshot(user_id)
        result = compute_reconciliation(
            user_id,
            snapshot,
            threshold_percent=self._config.reconciliation_threshold_percent,
            now=self.now(),
        )
        if not result.is_consistent:
            logger.warning(
                "[WALLET] Balance inconsistency for %s: wallet=%d calculated=%d diff=%d (%s%%) buckets=%s",
                user_id,
                result.wallet_total,
                result.calculated_total,
                result.difference,
                result.difference_percent,
                ",".join(result.mismatched_buckets),
            )
        return result
