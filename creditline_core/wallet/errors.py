# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Wallet error taxonomy.

Business outcomes (insufficient credits, idempotent replays) are returned as
values by the engine. The exceptions below are either caller errors or
infrastructure faults.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from creditline_core.wallet.types import InsufficientCredits


class WalletError(RuntimeError):
    retryable = False


class WalletNotFoundError(WalletError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No wallet for user {user_id!r} and lazy creation is disabled.")
        self.user_id = user_id


class UsageNotFoundError(WalletError):
    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"No usage entry for idempotency key {idempotency_key!r}.")
        self.idempotency_key = idempotency_key


class InvalidUsageDataError(WalletError):
    pass


class LedgerStatusError(WalletError):
    pass


class IdempotencyError(WalletError):
    pass


class StorageFailure(WalletError):
    """The atomic unit did not commit. Nothing was written; safe to retry."""
    retryable = True


class InsufficientCreditsError(WalletError):
    """Aborts a store commit from inside a mutator; the engine returns `.result`."""

    def __init__(self, result: "InsufficientCredits") -> None:
        super().__init__(result.message)
        self.result = result
