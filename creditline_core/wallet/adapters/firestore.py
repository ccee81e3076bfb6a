# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import logging
from typing import Any, Iterable

from firebase_admin import firestore
from google.api_core import exceptions as gcp_exceptions

from creditline_core.wallet.config import WalletConfig
from creditline_core.wallet.errors import IdempotencyError, StorageFailure
from creditline_core.wallet.ledger import UsageLedgerEntry, ledger_document_id
from creditline_core.wallet.services.store import (
    CommitOutcome,
    LedgerSnapshot,
    WalletMutator,
    WalletStore,
)
from creditline_core.wallet.types import CreditGrant, WalletBalance

logger = logging.getLogger(__name__)


def _snapshot_dict(snapshot: Any) -> dict:
    return snapshot.to_dict() or {}


def _is_contention(exc: ValueError) -> bool:
    # transactional() gives up with a ValueError, chained from the last Aborted
    # on current client releases.
    if isinstance(exc.__cause__, gcp_exceptions.Aborted):
        return True
    return str(exc).startswith("Failed to commit transaction in")


class FirestoreWalletStore(WalletStore):
    """
    Firestore-backed store.

    Layout:
        wallets/{user_id}
        credit_grants/{grant_id}
        usage_ledger/{sha256(idempotency_key)}

    Commits run in a Firestore transaction: every read happens before the
    first write, and the mutator may run again when the transaction retries
    on contention.
    """

    def __init__(self, db: firestore.Client, *, config: WalletConfig | None = None) -> None:
        self._db = db
        self._config = config or WalletConfig()
        self._wallets = self._db.collection(self._config.wallet_collection)
        self._grants = self._db.collection(self._config.grant_collection)
        self._ledger = self._db.collection(self._config.usage_collection)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_wallet(self, user_id: str) -> WalletBalance | None:
        try:
            snapshot = self._wallets.document(user_id).get()
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(f"Failed to read wallet for {user_id}: {exc}") from exc
        return self._wallet_from_snapshot(user_id, snapshot)

    def find_usage(self, idempotency_key: str) -> UsageLedgerEntry | None:
        try:
            snapshot = self._ledger.document(ledger_document_id(idempotency_key)).get()
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(f"Failed to read usage entry: {exc}") from exc
        if not snapshot.exists:
            return None
        return UsageLedgerEntry.from_dict(_snapshot_dict(snapshot))

    def list_grants(self, user_id: str) -> list[CreditGrant]:
        try:
            return self._grants_from(self._grants.where("user_id", "==", user_id).stream())
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(f"Failed to list grants for {user_id}: {exc}") from exc

    def list_usage(self, user_id: str) -> list[UsageLedgerEntry]:
        try:
            return self._usage_from(self._ledger.where("user_id", "==", user_id).stream())
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(f"Failed to list usage for {user_id}: {exc}") from exc

    def read_snapshot(self, user_id: str) -> LedgerSnapshot:
        transaction = self._db.transaction(read_only=True)

        @firestore.transactional
        def _read(transaction):  # type: ignore[no-untyped-def]
            wallet_snapshot = self._wallets.document(user_id).get(transaction=transaction)
            grants = self._grants_from(
                self._grants.where("user_id", "==", user_id).stream(transaction=transaction)
            )
            usage = self._usage_from(
                self._ledger.where("user_id", "==", user_id).stream(transaction=transaction)
            )
            return LedgerSnapshot(
                wallet=self._wallet_from_snapshot(user_id, wallet_snapshot),
                grants=tuple(grants),
                usage=tuple(usage),
            )

        try:
            return _read(transaction)
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(f"Failed to read ledger snapshot for {user_id}: {exc}") from exc
        except ValueError as exc:
            if not _is_contention(exc):
                raise
            raise StorageFailure(f"Ledger snapshot for {user_id} exhausted its retries: {exc}") from exc

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def commit(
        self,
        user_id: str,
        mutator: WalletMutator,
        *,
        idempotency_key: str | None = None,
    ) -> CommitOutcome:
        transaction = self._db.transaction()
        wallet_ref = self._wallets.document(user_id)

        @firestore.transactional
        def _commit(transaction):  # type: ignore[no-untyped-def]
            wallet = self._wallet_from_snapshot(user_id, wallet_ref.get(transaction=transaction))
            existing = None
            if idempotency_key:
                existing = self._usage_in(transaction, idempotency_key)

            mutation = mutator(wallet, existing)
            if mutation is None:
                return CommitOutcome(balance=wallet, existing_usage=existing)

            if mutation.new_usage is not None:
                key = mutation.new_usage.idempotency_key
                holder = existing if key == idempotency_key else self._usage_in(transaction, key)
                if holder is not None:
                    return CommitOutcome(balance=wallet, existing_usage=holder)

            transaction.set(wallet_ref, mutation.balance.to_dict())
            for grant in mutation.grants:
                transaction.create(self._grants.document(grant.id), grant.to_dict())
            if mutation.new_usage is not None:
                entry = mutation.new_usage
                transaction.create(self._ledger.document(ledger_document_id(entry.idempotency_key)), entry.to_dict())
            if mutation.updated_usage is not None:
                entry = mutation.updated_usage
                transaction.set(self._ledger.document(ledger_document_id(entry.idempotency_key)), entry.to_dict())
            return CommitOutcome(balance=mutation.balance, mutation=mutation, existing_usage=existing)

        try:
            return _commit(transaction)
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning("[WALLET] Firestore commit failed for %s: %s", user_id, exc)
            raise StorageFailure(f"Wallet commit failed for {user_id}: {exc}") from exc
        except ValueError as exc:
            if not _is_contention(exc):
                raise
            logger.warning("[WALLET] Firestore commit for %s gave up under contention: %s", user_id, exc)
            raise StorageFailure(f"Wallet commit for {user_id} exhausted its retries: {exc}") from exc

    def write_usage_entry(self, entry: UsageLedgerEntry) -> UsageLedgerEntry:
        """Append a ledger entry without touching the wallet (imports and backfills)."""
        doc_ref = self._ledger.document(ledger_document_id(entry.idempotency_key))
        try:
            doc_ref.create(entry.to_dict())
        except gcp_exceptions.AlreadyExists as exc:
            raise IdempotencyError(
                f"Usage entry already exists for idempotency key {entry.idempotency_key!r}."
            ) from exc
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(f"Failed to write usage entry: {exc}") from exc
        return entry

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _usage_in(self, transaction: Any, idempotency_key: str) -> UsageLedgerEntry | None:
        snapshot = self._ledger.document(ledger_document_id(idempotency_key)).get(transaction=transaction)
        if not snapshot.exists:
            return None
        return UsageLedgerEntry.from_dict(_snapshot_dict(snapshot))

    @staticmethod
    def _wallet_from_snapshot(user_id: str, snapshot: Any) -> WalletBalance | None:
        if not snapshot.exists:
            return None
        data = _snapshot_dict(snapshot)
        data.setdefault("user_id", user_id)
        return WalletBalance.from_dict(data)

    @staticmethod
    def _grants_from(snapshots: Iterable[Any]) -> list[CreditGrant]:
        return [CreditGrant.from_dict(_snapshot_dict(s)) for s in snapshots]

    @staticmethod
    def _usage_from(snapshots: Iterable[Any]) -> list[UsageLedgerEntry]:
        return [UsageLedgerEntry.from_dict(_snapshot_dict(s)) for s in snapshots]
