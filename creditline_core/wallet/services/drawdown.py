# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Bucket arithmetic for the wallet.

Pure functions over WalletBalance values. They run inside store commits, so
they must not touch storage or clocks.

Deduction order (unless a bucket is requested explicitly):
- package credits first: they never expire, and would otherwise be held while
  expiring credits lapse
- subscription credits next: they expire at period end
- free credits last: they replenish monthly
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Mapping, Optional

from creditline_core.wallet.errors import InsufficientCreditsError
from creditline_core.wallet.types import (
    DEDUCTION_ORDER,
    CreditGrant,
    CreditSource,
    InsufficientCredits,
    WalletBalance,
)


@dataclass(frozen=True, slots=True)
class DrawDownPlan:
    """How a deduction splits across buckets."""
    drawn: Dict[CreditSource, int]       # amount taken per bucket, in draw order
    remaining: Dict[CreditSource, int]   # new value of each touched bucket

    @property
    def total(self) -> int:
        return sum(self.drawn.values())

    @property
    def source(self) -> CreditSource:
        return next(iter(self.drawn))


def plan_deduction(
    wallet: WalletBalance,
    credits: int,
    *,
    preferred: Optional[CreditSource] = None,
) -> DrawDownPlan:
    """
    Compute the split for deducting `credits` from `wallet`.

    Raises InsufficientCreditsError when the wallet (or the preferred bucket
    alone) cannot cover the amount. Partial draws are never planned.
    """
    if preferred is not None:
        bucket = preferred.bucket
        have = wallet.bucket(bucket)
        if have < credits:
            raise InsufficientCreditsError(
                InsufficientCredits(required=credits, available=have, user_id=wallet.user_id, source=bucket)
            )
        return DrawDownPlan(drawn={bucket: credits}, remaining={bucket: have - credits})

    if wallet.total_credits < credits:
        raise InsufficientCreditsError(
            InsufficientCredits(required=credits, available=wallet.total_credits, user_id=wallet.user_id)
        )

    outstanding = credits
    drawn: Dict[CreditSource, int] = {}
    remaining: Dict[CreditSource, int] = {}
    for bucket in DEDUCTION_ORDER:
        if outstanding == 0:
            break
        have = wallet.bucket(bucket)
        take = min(have, outstanding)
        if take == 0:
            continue
        drawn[bucket] = take
        remaining[bucket] = have - take
        outstanding -= take

    return DrawDownPlan(drawn=drawn, remaining=remaining)


def apply_plan(wallet: WalletBalance, plan: DrawDownPlan, *, now: datetime) -> WalletBalance:
    return wallet.with_buckets(plan.remaining, updated_at=now)


def apply_grant(wallet: WalletBalance, grant: CreditGrant, *, now: datetime) -> WalletBalance:
    """Increment the bucket that holds `grant.source` credits."""
    bucket = grant.source.bucket
    updated = wallet.with_buckets({bucket: wallet.bucket(bucket) + grant.credits}, updated_at=now)
    if grant.source is CreditSource.SUBSCRIPTION and grant.expires_at is not None:
        updated = replace(updated, subscription_period_end=grant.expires_at)
    return updated


def restore_drawn(wallet: WalletBalance, drawn: Mapping[CreditSource, int], *, now: datetime) -> WalletBalance:
    """Give back credits previously taken by a deduction, bucket by bucket."""
    restored = {bucket: wallet.bucket(bucket) + amount for bucket, amount in drawn.items()}
    return wallet.with_buckets(restored, updated_at=now)
