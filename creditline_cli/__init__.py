# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors
"""
Creditline CLI Module

Provides operator commands for wallets and the usage ledger.

Commands:
- wallet balance <user>: Show a wallet summary
- wallet grant <user> <credits>: Grant credits
- wallet reconcile <user>: Check a wallet against its history
- wallet history <user>: List recorded usage

Usage:
    python -m creditline_cli wallet balance user-123
    python -m creditline_cli wallet --memory grant user-123 5000 --source package
    python -m creditline_cli wallet reconcile user-123
"""

from creditline_cli.wallet_cmd import main

__all__ = ["main"]
