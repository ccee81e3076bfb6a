# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Storage contract for the wallet engine.

A store holds three collections: the credit grant log, the usage ledger
(unique on idempotency key) and one wallet row per user. Every mutation goes
through `commit`, which runs a mutator against the current wallet row and
persists its result atomically, or not at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

from creditline_core.wallet.ledger import UsageLedgerEntry
from creditline_core.wallet.types import CreditGrant, WalletBalance


@dataclass(frozen=True, slots=True)
class WalletMutation:
    """Writes produced by one mutator run."""
    balance: WalletBalance
    grants: tuple[CreditGrant, ...] = ()
    new_usage: Optional[UsageLedgerEntry] = None
    updated_usage: Optional[UsageLedgerEntry] = None


@dataclass(frozen=True, slots=True)
class CommitOutcome:
    """
    balance: wallet row after the commit (unchanged when nothing was written).
    mutation: what was written, or None when the mutator declined.
    existing_usage: ledger entry already holding the idempotency key, if any.
    """
    balance: Optional[WalletBalance]
    mutation: Optional[WalletMutation] = None
    existing_usage: Optional[UsageLedgerEntry] = None

    @property
    def committed(self) -> bool:
        return self.mutation is not None


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Point-in-time view of one user's wallet row and both logs."""
    wallet: Optional[WalletBalance]
    grants: tuple[CreditGrant, ...] = ()
    usage: tuple[UsageLedgerEntry, ...] = ()


@dataclass(frozen=True, slots=True)
class UsageOutcome:
    """Result of recording (or refunding) usage. `replayed` marks an idempotency hit."""
    entry: UsageLedgerEntry
    balance: Optional[WalletBalance]
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "entry": self.entry.to_dict(),
            "balance": self.balance.to_dict() if self.balance else None,
            "replayed": self.replayed,
        }


# Receives the current wallet row (None if absent) and the ledger entry found
# under the commit's idempotency key (None if absent or no key was given).
# Must be pure: transactional stores may call it more than once.
WalletMutator = Callable[[Optional[WalletBalance], Optional[UsageLedgerEntry]], Optional[WalletMutation]]


@runtime_checkable
class WalletStore(Protocol):
    def get_wallet(self, user_id: str) -> WalletBalance | None:
        ...

    def find_usage(self, idempotency_key: str) -> UsageLedgerEntry | None:
        ...

    def list_grants(self, user_id: str) -> list[CreditGrant]:
        ...

    def list_usage(self, user_id: str) -> list[UsageLedgerEntry]:
        ...

    def read_snapshot(self, user_id: str) -> LedgerSnapshot:
        ...

    def commit(
        self,
        user_id: str,
        mutator: WalletMutator,
        *,
        idempotency_key: str | None = None,
    ) -> CommitOutcome:
        """
        Run `mutator` and persist its writes atomically, serialized per user.

        - A None mutation writes nothing.
        - Exceptions raised by the mutator abort the commit and propagate.
        - A new usage entry whose key is taken by the time of insert is not
          written; the outcome then carries the existing entry instead.
        - Backend failures raise StorageFailure with nothing written.
        """
        ...
