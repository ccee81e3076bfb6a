# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Dict, Iterable, List

from creditline_core.wallet.ledger import UsageLedgerEntry
from creditline_core.wallet.types import PaginatedUsage, UsageFilters, UsageSummary, as_utc

MAX_PAGE_SIZE = 200


def _entry_tokens(metrics: Dict[str, Any]) -> int:
    for key in ("total_tokens", "totalTokens"):
        value = metrics.get(key)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                return 0
    return 0


def matches(entry: UsageLedgerEntry, filters: UsageFilters) -> bool:
    # Naive bounds are read as UTC, matching stored timestamps.
    created_at = as_utc(entry.created_at)
    if filters.start_date and created_at < as_utc(filters.start_date):
        return False
    if filters.end_date and created_at > as_utc(filters.end_date):
        return False
    if filters.provider and entry.provider != filters.provider:
        return False
    if filters.model and entry.model != filters.model:
        return False
    if filters.status and entry.status.value != filters.status:
        return False
    return True


def summarize(entries: Iterable[UsageLedgerEntry]) -> UsageSummary:
    total_credits = 0
    total_usd = Decimal("0")
    total_tokens = 0
    by_model: Dict[str, Dict[str, int]] = {}
    by_provider: Dict[str, Dict[str, int]] = {}

    for entry in entries:
        total_credits += entry.credits
        total_usd += entry.cost_estimate
        total_tokens += _entry_tokens(entry.usage_metrics)

        model = by_model.setdefault(entry.model, {"credits": 0, "count": 0})
        model["credits"] += entry.credits
        model["count"] += 1

        provider = by_provider.setdefault(entry.provider, {"credits": 0, "count": 0})
        provider["credits"] += entry.credits
        provider["count"] += 1

    return UsageSummary(
        total_credits=total_credits,
        total_usd=total_usd,
        total_tokens=total_tokens,
        by_model=by_model,
        by_provider=by_provider,
    )


def paginate_usage(entries: Iterable[UsageLedgerEntry], filters: UsageFilters) -> PaginatedUsage:
    """Filter, sort newest first, and slice one page; the summary covers every match."""
    page = max(1, filters.page)
    page_size = max(1, min(MAX_PAGE_SIZE, filters.page_size))

    selected: List[UsageLedgerEntry] = [e for e in entries if matches(e, filters)]
    selected.sort(key=lambda e: as_utc(e.created_at), reverse=True)

    total = len(selected)
    offset = (page - 1) * page_size
    return PaginatedUsage(
        entries=selected[offset:offset + page_size],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
        summary=summarize(selected),
    )
