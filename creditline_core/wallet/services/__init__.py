# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from creditline_core.wallet.services.store import (
    CommitOutcome,
    LedgerSnapshot,
    UsageOutcome,
    WalletMutation,
    WalletMutator,
    WalletStore,
)
from creditline_core.wallet.services.drawdown import DrawDownPlan, plan_deduction
from creditline_core.wallet.services.reconciliation import compute_reconciliation, difference_percent
from creditline_core.wallet.services.history import paginate_usage
from creditline_core.wallet.services.engine import WalletEngine, next_reset_date

__all__ = [
    # Storage contract
    "CommitOutcome",
    "LedgerSnapshot",
    "UsageOutcome",
    "WalletMutation",
    "WalletMutator",
    "WalletStore",
    # Pure helpers
    "DrawDownPlan",
    "plan_deduction",
    "compute_reconciliation",
    "difference_percent",
    "paginate_usage",
    # Engine
    "WalletEngine",
    "next_reset_date",
]
