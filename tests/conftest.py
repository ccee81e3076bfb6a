# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from datetime import datetime, timezone

import pytest

from creditline_core.wallet.adapters.memory import InMemoryWalletStore
from creditline_core.wallet.config import WalletConfig
from creditline_core.wallet.services.engine import WalletEngine
from creditline_core.wallet.types import CreditReason, CreditSource

FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock so tests control timestamps."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryWalletStore()


@pytest.fixture
def config():
    # No implicit free grant: tests seed wallets explicitly.
    return WalletConfig(free_tier_credits=0)


@pytest.fixture
def engine(store, config, clock):
    return WalletEngine(store=store, config=config, clock=clock)


@pytest.fixture
def seed_wallet(engine):
    """Grant per-bucket amounts to a user: seed_wallet("u1", free=100, package=50)."""

    def _seed(user_id: str, *, free: int = 0, subscription: int = 0, package: int = 0):
        for source, amount in (
            (CreditSource.FREE, free),
            (CreditSource.SUBSCRIPTION, subscription),
            (CreditSource.PACKAGE, package),
        ):
            if amount:
                engine.grant(user_id, amount, source, CreditReason.MANUAL_ADJUSTMENT)
        return engine.get_balance(user_id)

    return _seed
