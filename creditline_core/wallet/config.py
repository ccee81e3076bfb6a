# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping


@dataclass(frozen=True, slots=True)
class WalletConfig:
    """Configuration for the wallet engine."""

    # Firestore paths
    wallet_collection: str = "wallets"
    grant_collection: str = "credit_grants"
    usage_collection: str = "usage_ledger"

    # Free tier (1,000,000 credits ~ 1 USD)
    free_tier_credits: int = 100_000
    default_reset_day: int = 1

    # Materialize wallets (with the initial free grant) on first touch
    lazy_create: bool = True

    # Safety margin on pre-checks; final metering is exact
    pre_check_buffer_multiplier: Decimal = Decimal("1.2")
    record_buffer_multiplier: Decimal = Decimal("1.0")

    # Allowed drift between wallet and history before flagging
    reconciliation_threshold_percent: Decimal = Decimal("1")

    # Summary warnings
    low_balance_threshold: int = 1000
    expiration_notification_days: int = 7


def _parse_bool(raw: Any, *, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    s = str(raw).strip().lower()
    if not s:
        return default
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default


def _parse_int(raw: Any, *, default: int, min_v: int, max_v: int) -> int:
    try:
        v = default if raw is None else int(str(raw).strip())
    except (TypeError, ValueError):
        v = default
    return max(min_v, min(max_v, v))


def _parse_decimal(raw: Any, *, default: Decimal, min_v: Decimal, max_v: Decimal) -> Decimal:
    try:
        v = default if raw is None else Decimal(str(raw).strip())
    except (ArithmeticError, ValueError):
        v = default
    if not v.is_finite():
        v = default
    return max(min_v, min(max_v, v))


def load_wallet_config(env: Mapping[str, str] | None = None) -> WalletConfig:
    """
    Build a WalletConfig from CREDITLINE_* environment variables.

    Unset or unparsable values fall back to the defaults; numeric values are
    clamped to sane ranges.
    """
    env = os.environ if env is None else env
    defaults = WalletConfig()
    return WalletConfig(
        wallet_collection=env.get("CREDITLINE_WALLET_COLLECTION", defaults.wallet_collection),
        grant_collection=env.get("CREDITLINE_GRANT_COLLECTION", defaults.grant_collection),
        usage_collection=env.get("CREDITLINE_USAGE_COLLECTION", defaults.usage_collection),
        free_tier_credits=_parse_int(
            env.get("CREDITLINE_FREE_TIER_MONTHLY_CREDITS"),
            default=defaults.free_tier_credits,
            min_v=0,
            max_v=10**12,
        ),
        default_reset_day=_parse_int(
            env.get("CREDITLINE_FREE_RESET_DAY"),
            default=defaults.default_reset_day,
            min_v=1,
            max_v=28,
        ),
        lazy_create=_parse_bool(env.get("CREDITLINE_LAZY_WALLETS"), default=defaults.lazy_create),
        pre_check_buffer_multiplier=_parse_decimal(
            env.get("CREDITLINE_PRE_CHECK_BUFFER"),
            default=defaults.pre_check_buffer_multiplier,
            min_v=Decimal("1"),
            max_v=Decimal("10"),
        ),
        record_buffer_multiplier=_parse_decimal(
            env.get("CREDITLINE_RECORD_BUFFER"),
            default=defaults.record_buffer_multiplier,
            min_v=Decimal("1"),
            max_v=Decimal("10"),
        ),
        reconciliation_threshold_percent=_parse_decimal(
            env.get("CREDITLINE_RECONCILIATION_THRESHOLD_PERCENT"),
            default=defaults.reconciliation_threshold_percent,
            min_v=Decimal("0"),
            max_v=Decimal("100"),
        ),
        low_balance_threshold=_parse_int(
            env.get("CREDITLINE_LOW_BALANCE_THRESHOLD"),
            default=defaults.low_balance_threshold,
            min_v=0,
            max_v=10**12,
        ),
        expiration_notification_days=_parse_int(
            env.get("CREDITLINE_EXPIRATION_NOTIFICATION_DAYS"),
            default=defaults.expiration_notification_days,
            min_v=0,
            max_v=365,
        ),
    )
