#!/usr/bin/env python3
"""Operator CLI for withdrawal liquidation and fund payouts."""

from __future__ import annotations

import argparse
from decimal import Decimal, InvalidOperation
import json
import logging
import os
from pathlib import Path
import sys
from typing import Any, Optional

import psycopg

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from settlement.errors import ValidationError
from settlement.jupiter_routing import JupiterRoutingService
from settlement.price_oracle import JupiterPriceOracle
from settlement.route_contract import RoutingOptions
from settlement.psycopg_db import PsycopgSettlementDB
from settlement.service import WithdrawalOrchestrator, build_orchestrator, respond
from settlement.settlement_config import SettlementConfig, load_settlement_config
from settlement.solana_ledger import SolanaLedgerClient


def _parse_decimal(value: str) -> Decimal:
    try:
        parsed = Decimal(value.strip())
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid decimal: {value}") from exc
    if not parsed.is_finite():
        raise argparse.ArgumentTypeError(f"Invalid decimal: {value}")
    return parsed


def _load_json_arg(value: str) -> Any:
    """Accept inline JSON or ``@path`` to a JSON file."""
    try:
        if value.startswith("@"):
            return json.loads(Path(value[1:]).read_text(encoding="utf-8"))
        return json.loads(value)
    except (OSError, json.JSONDecodeError) as exc:
        raise argparse.ArgumentTypeError(f"Invalid JSON argument: {exc}") from exc


def _resolve_connection(args: argparse.Namespace) -> psycopg.Connection[Any]:
    if args.dsn:
        return psycopg.connect(args.dsn, autocommit=True)

    host = args.host or os.getenv("DB_HOST")
    port = args.port or os.getenv("DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME")
    user = args.user or os.getenv("DB_USER")
    password = args.password or os.getenv("DB_PASSWORD")

    missing = [
        key
        for key, value in (
            ("host", host),
            ("port", port),
            ("dbname", dbname),
            ("user", user),
            ("password", password),
        )
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=True,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Withdrawal liquidation and payout CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")

    subparsers = parser.add_subparsers(dest="command", required=True)

    def _pair(name: str, help_text: str) -> argparse.ArgumentParser:
        cmd = subparsers.add_parser(name, help=help_text)
        cmd.add_argument("--investor", required=True)
        cmd.add_argument("--fund", required=True)
        return cmd

    start_cmd = _pair("start", "Open a withdrawal and return the initiate transaction")
    start_cmd.add_argument("--percent", required=True, type=_parse_decimal)

    plan_cmd = _pair("plan", "Quote held assets and build unsigned swap transactions")
    plan_cmd.add_argument("--withdrawal-id", default=None)
    plan_cmd.add_argument("--dust-threshold", type=int, default=None)
    plan_cmd.add_argument("--direct-only", action="store_true", help="Quote single-hop routes only")
    plan_cmd.add_argument(
        "--exclude-dex",
        dest="exclude_dexes",
        action="append",
        default=[],
        help="Venue label to skip when routing (repeatable)",
    )
    plan_cmd.add_argument("--slippage-bps", type=int, default=None)

    swaps_cmd = _pair("confirm-swaps", "Record submitted swap transactions")
    swaps_cmd.add_argument("--tx-ref", action="append", default=[], dest="tx_refs")

    _pair("finalize", "Build the finalize transaction after a successful dry run")

    record_cmd = _pair("record", "Record a confirmed finalize transaction")
    record_cmd.add_argument("--amount", required=True, type=int)
    record_cmd.add_argument("--tx-ref", required=True)
    record_cmd.add_argument("--details", type=_load_json_arg, default=None)

    fail_cmd = _pair("fail", "Abandon the active withdrawal")
    fail_cmd.add_argument("--reason", required=True)

    preview_cmd = _pair("preview", "Estimate withdrawal value and fees")
    preview_cmd.add_argument("--percent", required=True, type=_parse_decimal)

    subparsers.add_parser("expire-stale", help="Fail withdrawals idle past their TTL")

    unwrap_cmd = subparsers.add_parser("unwrap", help="Build the fund wrapped-native unwrap transaction")
    unwrap_cmd.add_argument("--fund", required=True)
    unwrap_cmd.add_argument("--payer", required=True)

    pay_cmd = subparsers.add_parser("pay", help="Plan a proportional payout and build transfer batches")
    pay_cmd.add_argument("--fund", required=True)
    pay_cmd.add_argument("--add-value", required=True, type=_parse_decimal)
    pay_cmd.add_argument("--holdings", required=True, type=_load_json_arg, help="JSON list of {wallet, shares}")
    pay_cmd.add_argument("--performance-fee", type=_parse_decimal, default=None)
    pay_cmd.add_argument("--total-shares", type=int, default=None)

    payment_cmd = subparsers.add_parser("record-payment", help="Record a confirmed payout batch")
    payment_cmd.add_argument("--fund", required=True)
    payment_cmd.add_argument("--tx-ref", required=True)
    payment_cmd.add_argument("--recipients", required=True, type=_load_json_arg, help="JSON list of {wallet, amount, role}")
    payment_cmd.add_argument("--total-value", type=int, default=None)

    history_cmd = subparsers.add_parser("history", help="List recorded withdrawals for an investor")
    history_cmd.add_argument("--investor", required=True)

    payments_cmd = subparsers.add_parser("payments", help="List recorded payouts for a fund")
    payments_cmd.add_argument("--fund", required=True)

    return parser


def _dispatch(orchestrator: WithdrawalOrchestrator, args: argparse.Namespace) -> Any:
    command = args.command
    if command == "start":
        return orchestrator.start(args.investor, args.fund, args.percent)
    if command == "plan":
        return orchestrator.plan(
            args.investor,
            args.fund,
            withdrawal_id=args.withdrawal_id,
            dust_threshold=args.dust_threshold,
            routing_options=RoutingOptions(
                direct_only=args.direct_only,
                exclude_dexes=tuple(args.exclude_dexes),
                slippage_bps=args.slippage_bps,
            ),
        )
    if command == "confirm-swaps":
        return orchestrator.confirm_swaps(args.investor, args.fund, args.tx_refs)
    if command == "finalize":
        return orchestrator.finalize(args.investor, args.fund)
    if command == "record":
        return orchestrator.record(args.investor, args.fund, args.amount, args.tx_ref, args.details)
    if command == "fail":
        return orchestrator.fail(args.investor, args.fund, args.reason)
    if command == "preview":
        return orchestrator.preview(args.investor, args.fund, args.percent)
    if command == "expire-stale":
        return orchestrator.expire_stale()
    if command == "unwrap":
        return orchestrator.unwrap(args.fund, args.payer)
    if command == "pay":
        try:
            holdings = [(str(item["wallet"]), int(item["shares"])) for item in args.holdings]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Malformed holdings") from exc
        return orchestrator.pay(
            args.fund,
            args.add_value,
            holdings,
            performance_fee=args.performance_fee,
            total_shares=args.total_shares,
        )
    if command == "record-payment":
        return orchestrator.record_payment(
            args.fund,
            args.tx_ref,
            args.recipients,
            total_value=args.total_value,
        )
    if command == "history":
        return orchestrator.withdrawal_history(args.investor)
    return orchestrator.payment_history(args.fund)


def _build_live_orchestrator(config: SettlementConfig, db: Optional[PsycopgSettlementDB]) -> WithdrawalOrchestrator:
    ledger = SolanaLedgerClient(
        program_id=config.program_id,
        rpc_url=config.rpc_url,
        commitment=config.rpc_commitment,
    )
    routing = JupiterRoutingService(base_url=config.routing_api_base_url)
    oracle = JupiterPriceOracle(
        base_url=config.price_api_base_url,
        settlement_asset=config.settlement_mint,
        settlement_decimals=config.settlement_decimals,
        timeout_seconds=config.quote_timeout_seconds,
    )
    return build_orchestrator(config, ledger=ledger, routing=routing, oracle=oracle, db=db)


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    config = load_settlement_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    conn = _resolve_connection(args)
    db = PsycopgSettlementDB(conn)
    try:
        orchestrator = _build_live_orchestrator(config, db)
        status_code, envelope = respond(lambda: _dispatch(orchestrator, args))
        envelope["status_code"] = status_code
        print(json.dumps(envelope, sort_keys=True, default=str))
        return 0 if envelope["success"] else 2
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
