# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Wallet vs. history comparison.

calculated = Σ grants - Σ completed usage, per bucket. Detection only: the
result is reported, never applied back to the wallet.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from creditline_core.wallet.ledger import UsageStatus
from creditline_core.wallet.services.store import LedgerSnapshot
from creditline_core.wallet.types import (
    BUCKETS,
    BucketReconciliation,
    CreditSource,
    ReconciliationResult,
    WalletBalance,
)

PERCENT_QUANT = Decimal("0.01")


def difference_percent(difference: int, wallet_total: int, calculated_total: int) -> Decimal:
    """Drift relative to the larger of the two totals, in percent."""
    if difference == 0:
        return Decimal("0.00")
    base = max(abs(wallet_total), abs(calculated_total))
    return (Decimal(difference) * 100 / Decimal(base)).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP)


def compute_reconciliation(
    user_id: str,
    snapshot: LedgerSnapshot,
    *,
    threshold_percent: Decimal,
    now: datetime,
) -> ReconciliationResult:
    granted: Dict[CreditSource, int] = {bucket: 0 for bucket in BUCKETS}
    used: Dict[CreditSource, int] = {bucket: 0 for bucket in BUCKETS}

    for grant in snapshot.grants:
        granted[grant.source.bucket] += grant.credits

    for entry in snapshot.usage:
        if entry.status != UsageStatus.COMPLETED:
            continue
        for bucket, amount in entry.drawn_buckets().items():
            used[bucket.bucket] += amount

    wallet = snapshot.wallet or WalletBalance(user_id=user_id, updated_at=now)
    buckets = {
        bucket.value: BucketReconciliation(
            bucket=bucket,
            wallet=wallet.bucket(bucket),
            granted=granted[bucket],
            used=used[bucket],
        )
        for bucket in BUCKETS
    }

    total_granted = sum(granted.values())
    total_used = sum(used.values())
    calculated_total = total_granted - total_used
    difference = abs(wallet.total_credits - calculated_total)
    percent = difference_percent(difference, wallet.total_credits, calculated_total)

    return ReconciliationResult(
        user_id=user_id,
        wallet_total=wallet.total_credits,
        calculated_total=calculated_total,
        difference=difference,
        difference_percent=percent,
        is_consistent=percent <= threshold_percent,
        total_granted=total_granted,
        total_used=total_used,
        buckets=buckets,
        timestamp=now,
    )
