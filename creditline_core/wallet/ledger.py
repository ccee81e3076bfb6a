# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import hashlib
import uuid

from creditline_core.wallet.errors import LedgerStatusError
from creditline_core.wallet.types import CreditSource, _iso, _parse_datetime, utcnow


class UsageStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"

    def can_transition_to(self, target: "UsageStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[UsageStatus, frozenset[UsageStatus]] = {
    UsageStatus.PENDING: frozenset({UsageStatus.COMPLETED, UsageStatus.FAILED}),
    UsageStatus.COMPLETED: frozenset({UsageStatus.REFUNDED}),
    UsageStatus.REFUNDED: frozenset(),
    UsageStatus.FAILED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class UsageLedgerEntry:
    # Core fields
    idempotency_key: str
    user_id: str
    provider: str
    model: str
    credits: int
    cost_estimate: Decimal
    source: CreditSource
    status: UsageStatus = UsageStatus.PENDING

    # Per-bucket amounts that paid for this entry, in draw order
    drawn: Dict[CreditSource, int] = field(default_factory=dict)
    usage_metrics: Dict[str, Any] = field(default_factory=dict)

    # Optional correlation ids
    session_id: Optional[str] = None
    message_id: Optional[str] = None

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    def transition(self, status: UsageStatus, **changes: Any) -> "UsageLedgerEntry":
        """Return a copy moved forward to `status`; regressions raise LedgerStatusError."""
        if not self.status.can_transition_to(status):
            raise LedgerStatusError(
                f"Usage entry {self.idempotency_key!r} cannot move from {self.status.value} to {status.value}."
            )
        return replace(self, status=status, **changes)

    def drawn_buckets(self) -> Dict[CreditSource, int]:
        """Per-bucket split; entries written without one are charged to `source`."""
        if self.drawn:
            return dict(self.drawn)
        return {self.source.bucket: self.credits}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for persistence."""
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "provider": self.provider,
            "model": self.model,
            "usage_metrics": dict(self.usage_metrics),
            "credits": self.credits,
            "cost_estimate": str(self.cost_estimate),
            "source": self.source.value,
            "drawn": {source.value: amount for source, amount in self.drawn.items()},
            "status": self.status.value,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageLedgerEntry":
        """Load from dictionary."""
        drawn_raw: Mapping[str, Any] = data.get("drawn") or {}
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            idempotency_key=str(data.get("idempotency_key", "")),
            user_id=str(data.get("user_id", "")),
            session_id=data.get("session_id"),
            message_id=data.get("message_id"),
            provider=str(data.get("provider", "")),
            model=str(data.get("model", "")),
            usage_metrics=dict(data.get("usage_metrics") or {}),
            credits=int(data.get("credits", 0)),
            cost_estimate=Decimal(str(data.get("cost_estimate", "0"))),
            source=CreditSource(data.get("source", CreditSource.FREE.value)),
            drawn={CreditSource(k): int(v) for k, v in drawn_raw.items()},
            status=UsageStatus(data.get("status", UsageStatus.PENDING.value)),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
        )


@dataclass(frozen=True, slots=True)
class UsageRecordRequest:
    """A priced consumption event to be charged exactly once."""
    user_id: str
    provider: str
    model: str
    credits: int
    cost_estimate: Decimal
    idempotency_key: str
    usage_metrics: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    message_id: Optional[str] = None

    def to_pending_entry(self, *, created_at: datetime) -> UsageLedgerEntry:
        return UsageLedgerEntry(
            idempotency_key=self.idempotency_key,
            user_id=self.user_id,
            provider=self.provider,
            model=self.model,
            credits=self.credits,
            cost_estimate=self.cost_estimate,
            # Replaced by the first drawn bucket once the deduction is planned.
            source=CreditSource.FREE,
            status=UsageStatus.PENDING,
            usage_metrics=dict(self.usage_metrics),
            session_id=self.session_id,
            message_id=self.message_id,
            created_at=created_at,
        )


def build_idempotency_key(*parts: str) -> str:
    cleaned = [p.strip() for p in parts if p and p.strip()]
    return ":".join(cleaned)


def build_usage_idempotency_key(user_id: str, message_id: str) -> str:
    """
    Build a stable idempotency key for one metered message.
    Must not include timestamps or costs: a retry has to land on the same key.
    """
    return build_idempotency_key(user_id, message_id, "usage", "v1")


def ledger_document_id(idempotency_key: str) -> str:
    """Storage-safe document id for an idempotency key (keys may contain '/')."""
    return hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()
