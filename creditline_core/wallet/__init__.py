# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from creditline_core.wallet.config import WalletConfig, load_wallet_config
from creditline_core.wallet.errors import (
    IdempotencyError,
    InvalidUsageDataError,
    LedgerStatusError,
    StorageFailure,
    UsageNotFoundError,
    WalletError,
    WalletNotFoundError,
)
from creditline_core.wallet.ledger import (
    UsageLedgerEntry,
    UsageRecordRequest,
    UsageStatus,
    build_idempotency_key,
    build_usage_idempotency_key,
)
from creditline_core.wallet.services.engine import WalletEngine
from creditline_core.wallet.services.store import UsageOutcome, WalletStore
from creditline_core.wallet.adapters.firestore import FirestoreWalletStore
from creditline_core.wallet.adapters.memory import InMemoryWalletStore
from creditline_core.wallet.types import (
    AffordabilityResult,
    CreditGrant,
    CreditReason,
    CreditSource,
    DeductionResult,
    InsufficientCredits,
    PaginatedUsage,
    ReconciliationResult,
    UsageFilters,
    WalletBalance,
)

__all__ = [
    "WalletConfig",
    "load_wallet_config",
    "WalletError",
    "WalletNotFoundError",
    "UsageNotFoundError",
    "InvalidUsageDataError",
    "LedgerStatusError",
    "IdempotencyError",
    "StorageFailure",
    "UsageLedgerEntry",
    "UsageRecordRequest",
    "UsageStatus",
    "build_idempotency_key",
    "build_usage_idempotency_key",
    "WalletEngine",
    "WalletStore",
    "UsageOutcome",
    "FirestoreWalletStore",
    "InMemoryWalletStore",
    "AffordabilityResult",
    "CreditGrant",
    "CreditReason",
    "CreditSource",
    "DeductionResult",
    "InsufficientCredits",
    "PaginatedUsage",
    "ReconciliationResult",
    "UsageFilters",
    "WalletBalance",
]
