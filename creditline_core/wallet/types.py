# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_CEILING
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

if TYPE_CHECKING:
    from creditline_core.wallet.ledger import UsageLedgerEntry


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; aware ones pass through unchanged."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def ceil_credits(value: Decimal) -> int:
    """Ceiling integer of a Decimal credit amount."""
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if hasattr(value, "to_datetime"):
        return as_utc(value.to_datetime())
    return as_utc(datetime.fromisoformat(str(value)))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------------------------------------------------------------
# Credit sources
# -----------------------------------------------------------------------------

class CreditSource(str, Enum):
    FREE = "free"
    SUBSCRIPTION = "subscription"
    PACKAGE = "package"
    PROMO = "promo"
    REFUND = "refund"

    @property
    def bucket(self) -> "CreditSource":
        """Wallet bucket that holds credits granted from this source.

        Promo and refund credits never expire, so they share the package bucket.
        """
        if self in (CreditSource.PROMO, CreditSource.REFUND):
            return CreditSource.PACKAGE
        return self


class CreditReason(str, Enum):
    MONTHLY_FREE = "monthly_free"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    PURCHASE = "purchase"
    REFUND = "refund"
    PROMO = "promo"
    MANUAL_ADJUSTMENT = "manual_adjustment"


# Storage order of the wallet buckets.
BUCKETS: tuple[CreditSource, ...] = (
    CreditSource.FREE,
    CreditSource.SUBSCRIPTION,
    CreditSource.PACKAGE,
)

# Draw-down priority: non-expiring first, free tier last.
DEDUCTION_ORDER: tuple[CreditSource, ...] = (
    CreditSource.PACKAGE,
    CreditSource.SUBSCRIPTION,
    CreditSource.FREE,
)

_BUCKET_FIELDS: Dict[CreditSource, str] = {
    CreditSource.FREE: "free_credits",
    CreditSource.SUBSCRIPTION: "subscription_credits",
    CreditSource.PACKAGE: "package_credits",
}


# -----------------------------------------------------------------------------
# Wallet balance (denormalized cache row)
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class WalletBalance:
    """Current credit totals for one user, partitioned by bucket."""
    user_id: str
    free_credits: int = 0
    subscription_credits: int = 0
    package_credits: int = 0
    free_reset_at: Optional[datetime] = None
    subscription_period_end: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        for source, name in _BUCKET_FIELDS.items():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{name} must be an int, got {type(value).__name__}")
            if value < 0:
                raise ValueError(f"{source.value} bucket cannot be negative ({value})")

    @property
    def total_credits(self) -> int:
        return self.free_credits + self.subscription_credits + self.package_credits

    def bucket(self, source: CreditSource) -> int:
        return getattr(self, _BUCKET_FIELDS[source.bucket])

    def breakdown(self) -> Dict[str, int]:
        return {source.value: self.bucket(source) for source in BUCKETS}

    def with_buckets(self, buckets: Mapping[CreditSource, int], *, updated_at: datetime) -> "WalletBalance":
        changes: Dict[str, Any] = {_BUCKET_FIELDS[source]: amount for source, amount in buckets.items()}
        return replace(self, updated_at=updated_at, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "free_credits": self.free_credits,
            "subscription_credits": self.subscription_credits,
            "package_credits": self.package_credits,
            "total_credits": self.total_credits,
            "free_reset_at": _iso(self.free_reset_at),
            "subscription_period_end": _iso(self.subscription_period_end),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletBalance":
        # total_credits is derived; the stored copy exists for queries only.
        return cls(
            user_id=str(data.get("user_id", "")),
            free_credits=int(data.get("free_credits") or 0),
            subscription_credits=int(data.get("subscription_credits") or 0),
            package_credits=int(data.get("package_credits") or 0),
            free_reset_at=_parse_datetime(data.get("free_reset_at")),
            subscription_period_end=_parse_datetime(data.get("subscription_period_end")),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
        )


# -----------------------------------------------------------------------------
# Credit grant (append-only)
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CreditGrant:
    user_id: str
    source: CreditSource
    credits: int
    reason: str
    expires_at: Optional[datetime] = None
    external_payment_ref: Optional[str] = None
    external_preference_ref: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source": self.source.value,
            "credits": self.credits,
            "reason": self.reason,
            "expires_at": _iso(self.expires_at),
            "external_payment_ref": self.external_payment_ref,
            "external_preference_ref": self.external_preference_ref,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreditGrant":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            source=CreditSource(data["source"]),
            credits=int(data["credits"]),
            reason=str(data.get("reason") or ""),
            expires_at=_parse_datetime(data.get("expires_at")),
            external_payment_ref=data.get("external_payment_ref"),
            external_preference_ref=data.get("external_preference_ref"),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
        )


# -----------------------------------------------------------------------------
# Business outcomes
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class InsufficientCredits:
    """Expected refusal: the wallet (or the requested bucket) cannot cover the amount."""
    required: int
    available: int
    user_id: Optional[str] = None
    source: Optional[CreditSource] = None

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)

    @property
    def message(self) -> str:
        scope = f" in {self.source.value} credits" if self.source else ""
        return f"Insufficient credits{scope}. Required: {self.required}, Available: {self.available}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "insufficient_credits",
            "required": self.required,
            "available": self.available,
            "source": self.source.value if self.source else None,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class DeductionResult:
    """Successful deduction: per-bucket amounts in draw order plus the new wallet."""
    user_id: str
    credits: int
    drawn: Dict[CreditSource, int]
    balance: WalletBalance

    @property
    def source(self) -> CreditSource:
        """First bucket drawn from."""
        return next(iter(self.drawn))

    @property
    def sources(self) -> tuple[CreditSource, ...]:
        return tuple(self.drawn)

    @property
    def new_total(self) -> int:
        return self.balance.total_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "credits": self.credits,
            "source": self.source.value,
            "drawn": {source.value: amount for source, amount in self.drawn.items()},
            "new_total": self.new_total,
        }


@dataclass(frozen=True, slots=True)
class AffordabilityResult:
    can_afford: bool
    available: int
    required: int
    breakdown: Dict[str, int] = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_afford": self.can_afford,
            "available": self.available,
            "required": self.required,
            "breakdown": dict(self.breakdown),
            "message": self.message,
        }


# -----------------------------------------------------------------------------
# Reconciliation
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class BucketReconciliation:
    bucket: CreditSource
    wallet: int
    granted: int
    used: int

    @property
    def calculated(self) -> int:
        return self.granted - self.used

    @property
    def difference(self) -> int:
        return abs(self.wallet - self.calculated)

    @property
    def is_consistent(self) -> bool:
        return self.difference == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "granted": self.granted,
            "used": self.used,
            "calculated": self.calculated,
            "difference": self.difference,
        }


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    user_id: str
    wallet_total: int
    calculated_total: int
    difference: int
    difference_percent: Decimal
    is_consistent: bool
    total_granted: int
    total_used: int
    buckets: Dict[str, BucketReconciliation] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def mismatched_buckets(self) -> tuple[str, ...]:
        return tuple(name for name, bucket in self.buckets.items() if not bucket.is_consistent)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "wallet_total": self.wallet_total,
            "calculated_total": self.calculated_total,
            "difference": self.difference,
            "difference_percent": str(self.difference_percent),
            "is_consistent": self.is_consistent,
            "total_granted": self.total_granted,
            "total_used": self.total_used,
            "buckets": {name: bucket.to_dict() for name, bucket in self.buckets.items()},
            "timestamp": _iso(self.timestamp),
        }


# -----------------------------------------------------------------------------
# Usage history
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class UsageFilters:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    status: Optional[str] = None
    page: int = 1
    page_size: int = 20


@dataclass(frozen=True, slots=True)
class UsageSummary:
    total_credits: int = 0
    total_usd: Decimal = Decimal("0")
    total_tokens: int = 0
    by_model: Dict[str, Dict[str, int]] = field(default_factory=dict)
    by_provider: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_credits": self.total_credits,
            "total_usd": str(self.total_usd),
            "total_tokens": self.total_tokens,
            "by_model": {k: dict(v) for k, v in self.by_model.items()},
            "by_provider": {k: dict(v) for k, v in self.by_provider.items()},
        }


@dataclass(frozen=True, slots=True)
class PaginatedUsage:
    entries: list["UsageLedgerEntry"]
    total: int
    page: int
    page_size: int
    total_pages: int
    summary: UsageSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "summary": self.summary.to_dict(),
        }
