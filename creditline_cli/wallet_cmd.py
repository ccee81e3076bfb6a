# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors
"""
Wallet CLI Commands

Operator commands for inspecting and adjusting wallets.

Commands:
- balance: Show a wallet summary
- grant: Grant credits (manual adjustment, promo, refund)
- reconcile: Compare a wallet with its grant/usage history
- history: List recorded usage
- renew: Top the free tier up to its monthly allowance
- refund: Refund a completed usage entry

Exit codes: 0 ok, 1 error, 2 reconciliation found an inconsistency.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from typing import NoReturn

from creditline_core.billing.config_loader import load_pricing_policy
from creditline_core.billing.conversion import format_credits
from creditline_core.billing.orchestrator import BillingOrchestrator
from creditline_core.config import CreditlineConfig
from creditline_core.wallet.adapters.memory import InMemoryWalletStore
from creditline_core.wallet.config import load_wallet_config
from creditline_core.wallet.errors import WalletError
from creditline_core.wallet.services.engine import WalletEngine
from creditline_core.wallet.services.store import WalletStore
from creditline_core.wallet.types import CreditReason, CreditSource, UsageFilters, as_utc

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INCONSISTENT = 2


def _firestore_store(config: CreditlineConfig) -> WalletStore:
    import firebase_admin
    from firebase_admin import credentials, firestore

    from creditline_core.wallet.adapters.firestore import FirestoreWalletStore

    try:
        app = firebase_admin.get_app()
    except ValueError:
        cred = (
            credentials.Certificate(config.credentials_path)
            if config.credentials_path
            else credentials.ApplicationDefault()
        )
        options = {"projectId": config.firestore_project} if config.firestore_project else None
        app = firebase_admin.initialize_app(cred, options)
    return FirestoreWalletStore(firestore.client(app), config=load_wallet_config())


def build_orchestrator(args: argparse.Namespace, config: CreditlineConfig | None = None) -> BillingOrchestrator:
    config = config or CreditlineConfig.from_env()
    store = InMemoryWalletStore() if args.memory else _firestore_store(config)
    engine = WalletEngine(store=store, config=load_wallet_config())
    return BillingOrchestrator(engine=engine, policy=load_pricing_policy(config.pricing_config_path))


def _parse_when(raw: str | None) -> datetime | None:
    """ISO-8601 timestamp; without an offset it is taken as UTC."""
    return as_utc(datetime.fromisoformat(raw)) if raw else None


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def cmd_balance(args: argparse.Namespace) -> int:
    """Show a wallet summary."""
    summary = build_orchestrator(args).get_wallet_summary(args.user_id)
    if args.json:
        _print_json(summary.to_dict())
        return EXIT_OK

    balance = summary.balance
    print(f"Wallet {balance.user_id}: {format_credits(balance.total_credits)} credits (~${summary.estimated_usd:.2f})")
    for name, amount in balance.breakdown().items():
        print(f"  {name:<13} {amount}")
    if summary.next_reset_date:
        print(f"  next reset    {summary.next_reset_date.date().isoformat()}")
    if summary.low_balance_warning:
        print(f"! {summary.low_balance_warning}")
    for warning in summary.expiration_warnings:
        print(f"! {warning.credits} {warning.source.value} credits expire in {warning.days_until_expiry} day(s)")
    return EXIT_OK


def cmd_grant(args: argparse.Namespace) -> int:
    """Grant credits to a wallet."""
    orchestrator = build_orchestrator(args)
    expires_at = _parse_when(args.expires_at)
    grant = orchestrator.grant_credits(
        args.user_id,
        args.credits,
        CreditSource(args.source),
        args.reason,
        expires_at=expires_at,
        external_ref=args.external_ref,
    )
    balance = orchestrator.engine.get_balance(args.user_id)
    print(f"✓ Granted {grant.credits} {grant.source.value} credits to {grant.user_id} (grant {grant.id})")
    print(f"  New total: {balance.total_credits}")
    return EXIT_OK


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Compare the wallet row against grant and usage history."""
    result = build_orchestrator(args).reconcile_wallet(args.user_id)
    if args.json:
        _print_json(result.to_dict())
    else:
        mark = "✓" if result.is_consistent else "✗"
        print(f"{mark} Wallet {result.user_id}: wallet={result.wallet_total} calculated={result.calculated_total}")
        print(f"  Difference: {result.difference} ({result.difference_percent}%)")
        print(f"  Granted: {result.total_granted}  Used: {result.total_used}")
        for name in result.mismatched_buckets:
            bucket = result.buckets[name]
            print(f"  - {name}: wallet={bucket.wallet} calculated={bucket.calculated}")
    return EXIT_OK if result.is_consistent else EXIT_INCONSISTENT


def cmd_history(args: argparse.Namespace) -> int:
    """List recorded usage, newest first."""
    filters = UsageFilters(
        start_date=_parse_when(args.since),
        end_date=_parse_when(args.until),
        provider=args.provider,
        model=args.model,
        status=args.status,
        page=args.page,
        page_size=args.page_size,
    )
    page = build_orchestrator(args).get_usage_history(args.user_id, filters)
    if args.json:
        _print_json(page.to_dict())
        return EXIT_OK

    print(f"Usage for {args.user_id}: {page.total} entries (page {page.page}/{max(page.total_pages, 1)})")
    for entry in page.entries:
        print(
            f"  {entry.created_at.isoformat()}  {entry.provider}/{entry.model}  "
            f"{entry.credits:>8}  {entry.status.value}"
        )
    print(f"  Total credits: {page.summary.total_credits}  (~${page.summary.total_usd})")
    return EXIT_OK


def cmd_renew(args: argparse.Namespace) -> int:
    """Top the free tier up to its monthly allowance."""
    balance = build_orchestrator(args).engine.renew_free_credits(args.user_id, args.amount)
    print(f"✓ Free credits for {args.user_id}: {balance.free_credits} (next reset {balance.free_reset_at})")
    return EXIT_OK


def cmd_refund(args: argparse.Namespace) -> int:
    """Refund a completed usage entry by idempotency key."""
    outcome = build_orchestrator(args).engine.refund_usage(args.idempotency_key, reason=args.reason)
    verb = "Already refunded" if outcome.replayed else "Refunded"
    print(f"✓ {verb} {outcome.entry.credits} credits to {outcome.entry.user_id}")
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="creditline",
        description="Creditline operator commands",
    )
    groups = parser.add_subparsers(dest="group", required=True)

    wallet = groups.add_parser("wallet", help="Wallet inspection and adjustments")
    wallet.add_argument(
        "--memory",
        action="store_true",
        help="Use an in-process store instead of Firestore (dry run)",
    )
    wallet.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    subparsers = wallet.add_subparsers(dest="command", required=True)

    # balance command
    balance_parser = subparsers.add_parser("balance", help="Show a wallet summary")
    balance_parser.add_argument("user_id", help="User id")
    balance_parser.set_defaults(func=cmd_balance)

    # grant command
    grant_parser = subparsers.add_parser("grant", help="Grant credits to a wallet")
    grant_parser.add_argument("user_id", help="User id")
    grant_parser.add_argument("credits", type=int, help="Credits to grant (positive)")
    grant_parser.add_argument(
        "--source", "-s",
        choices=[s.value for s in CreditSource],
        default=CreditSource.PROMO.value,
        help="Credit source (default: promo)",
    )
    grant_parser.add_argument(
        "--reason", "-r",
        default=CreditReason.MANUAL_ADJUSTMENT.value,
        help="Grant reason (default: manual_adjustment)",
    )
    grant_parser.add_argument("--expires-at", help="ISO-8601 expiry (subscription grants)")
    grant_parser.add_argument("--external-ref", help="Payment reference from the provider")
    grant_parser.set_defaults(func=cmd_grant)

    # reconcile command
    reconcile_parser = subparsers.add_parser("reconcile", help="Check a wallet against its history")
    reconcile_parser.add_argument("user_id", help="User id")
    reconcile_parser.set_defaults(func=cmd_reconcile)

    # history command
    history_parser = subparsers.add_parser("history", help="List recorded usage")
    history_parser.add_argument("user_id", help="User id")
    history_parser.add_argument("--since", help="ISO-8601 start (inclusive)")
    history_parser.add_argument("--until", help="ISO-8601 end (inclusive)")
    history_parser.add_argument("--provider", help="Filter by provider")
    history_parser.add_argument("--model", help="Filter by model")
    history_parser.add_argument("--status", help="Filter by status (pending, completed, refunded, failed)")
    history_parser.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    history_parser.add_argument("--page-size", type=int, default=20, help="Entries per page (default: 20)")
    history_parser.set_defaults(func=cmd_history)

    # renew command
    renew_parser = subparsers.add_parser("renew", help="Run the monthly free-tier top-up")
    renew_parser.add_argument("user_id", help="User id")
    renew_parser.add_argument("--amount", type=int, help="Allowance override")
    renew_parser.set_defaults(func=cmd_renew)

    # refund command
    refund_parser = subparsers.add_parser("refund", help="Refund a completed usage entry")
    refund_parser.add_argument("idempotency_key", help="Idempotency key of the usage entry")
    refund_parser.add_argument("--reason", help="Refund reason")
    refund_parser.set_defaults(func=cmd_refund)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the wallet CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)
    config = CreditlineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
    except (WalletError, ValueError) as e:
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()
