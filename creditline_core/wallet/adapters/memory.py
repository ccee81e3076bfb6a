# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Optional

from creditline_core.wallet.errors import IdempotencyError
from creditline_core.wallet.ledger import UsageLedgerEntry
from creditline_core.wallet.services.store import (
    CommitOutcome,
    LedgerSnapshot,
    WalletMutation,
    WalletMutator,
    WalletStore,
)
from creditline_core.wallet.types import CreditGrant, WalletBalance


@dataclass(frozen=True, slots=True)
class _UserState:
    wallet: Optional[WalletBalance] = None
    grants: tuple[CreditGrant, ...] = ()
    usage: tuple[UsageLedgerEntry, ...] = ()


_EMPTY = _UserState()


class InMemoryWalletStore(WalletStore):
    """
    Process-local store for tests and dry runs.

    Commits for one user serialize on that user's lock. Each commit swaps in
    a new immutable _UserState, so readers take a consistent snapshot by
    reading one reference and never block writers.
    """

    def __init__(self) -> None:
        self._states: Dict[str, _UserState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # idempotency key -> user id, shared across users
        self._keys: Dict[str, str] = {}
        self._keys_lock = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def _state(self, user_id: str) -> _UserState:
        return self._states.get(user_id, _EMPTY)

    def get_wallet(self, user_id: str) -> WalletBalance | None:
        return self._state(user_id).wallet

    def find_usage(self, idempotency_key: str) -> UsageLedgerEntry | None:
        owner = self._keys.get(idempotency_key)
        if owner is None:
            return None
        for entry in self._state(owner).usage:
            if entry.idempotency_key == idempotency_key:
                return entry
        return None

    def list_grants(self, user_id: str) -> list[CreditGrant]:
        return list(self._state(user_id).grants)

    def list_usage(self, user_id: str) -> list[UsageLedgerEntry]:
        return list(self._state(user_id).usage)

    def read_snapshot(self, user_id: str) -> LedgerSnapshot:
        state = self._state(user_id)
        return LedgerSnapshot(wallet=state.wallet, grants=state.grants, usage=state.usage)

    def commit(
        self,
        user_id: str,
        mutator: WalletMutator,
        *,
        idempotency_key: str | None = None,
    ) -> CommitOutcome:
        with self._lock_for(user_id):
            state = self._state(user_id)
            existing = self.find_usage(idempotency_key) if idempotency_key else None
            mutation = mutator(state.wallet, existing)
            if mutation is None:
                return CommitOutcome(balance=state.wallet, existing_usage=existing)

            if mutation.new_usage is None:
                self._states[user_id] = self._apply(state, mutation)
                return CommitOutcome(balance=mutation.balance, mutation=mutation, existing_usage=existing)

            key = mutation.new_usage.idempotency_key
            # Re-check at insert time: another user's commit may hold the key.
            # State is published before the key so an indexed key always resolves.
            with self._keys_lock:
                if key in self._keys:
                    return CommitOutcome(balance=state.wallet, existing_usage=self.find_usage(key))
                self._states[user_id] = self._apply(state, mutation)
                self._keys[key] = user_id
            return CommitOutcome(balance=mutation.balance, mutation=mutation, existing_usage=existing)

    @staticmethod
    def _apply(state: _UserState, mutation: WalletMutation) -> _UserState:
        usage = state.usage
        if mutation.updated_usage is not None:
            updated = mutation.updated_usage
            usage = tuple(
                updated if entry.idempotency_key == updated.idempotency_key else entry
                for entry in usage
            )
        if mutation.new_usage is not None:
            usage = usage + (mutation.new_usage,)
        return _UserState(
            wallet=mutation.balance,
            grants=state.grants + mutation.grants,
            usage=usage,
        )

    def write_usage_entry(self, entry: UsageLedgerEntry) -> UsageLedgerEntry:
        """Append a ledger entry without touching the wallet (imports and backfills)."""
        with self._lock_for(entry.user_id):
            with self._keys_lock:
                if entry.idempotency_key in self._keys:
                    raise IdempotencyError(
                        f"Usage entry already exists for idempotency key {entry.idempotency_key!r}."
                    )
                state = self._state(entry.user_id)
                self._states[entry.user_id] = _UserState(
                    wallet=state.wallet,
                    grants=state.grants,
                    usage=state.usage + (entry,),
                )
                self._keys[entry.idempotency_key] = entry.user_id
            return entry
