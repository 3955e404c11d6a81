#!/usr/bin/env python3
"""Governance pipeline CLI for proposal evaluation, drift scans and status."""

from __future__ import annotations

import argparse
from dataclasses import asdict
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import sys
from typing import Any, Mapping, Optional

import psycopg

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from governance.config import load_governance_config
from governance.orchestrator import MetaOrchestrator
from governance.providers import (
    ClosedTrade,
    FixedDirectionProvider,
    MarketContext,
    ProposalDirectionProvider,
    StaticCandleSource,
    TradeProposal,
    candle_from_mapping,
)
from governance.store import GovernanceStore, PsycopgGovernanceDatabase

logger = logging.getLogger(__name__)


def _parse_ts(value: str) -> datetime:
    normalized = value.strip().replace("Z", "+00:00")
    try:
        ts = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid timestamp: {value}") from exc
    if ts.tzinfo is None:
        raise argparse.ArgumentTypeError("Timestamp must include timezone offset.")
    return ts.astimezone(timezone.utc)


def _resolve_connection(args: argparse.Namespace) -> psycopg.Connection[Any]:
    if args.dsn:
        return psycopg.connect(args.dsn, autocommit=False)

    host = args.host or os.getenv("DB_HOST") or os.getenv("TEST_DB_HOST")
    port = args.port or os.getenv("DB_PORT") or os.getenv("TEST_DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME") or os.getenv("TEST_DB_NAME")
    user = args.user or os.getenv("DB_USER") or os.getenv("TEST_DB_USER")
    password = args.password or os.getenv("DB_PASSWORD") or os.getenv("TEST_DB_PASSWORD")

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
            "Missing DB connection args. Provide --dsn, --no-db or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=False,
    )


def _proposal_from_mapping(raw: Mapping[str, Any]) -> TradeProposal:
    return TradeProposal(
        proposal_id=str(raw["proposal_id"]),
        symbol=str(raw["symbol"]),
        direction=str(raw.get("direction", "LONG")),
        agent_id=str(raw["agent_id"]),
        timestamp=_parse_ts(str(raw["timestamp"])),
        timeframe=str(raw.get("timeframe", "5m")),
        expected_move_pips=(
            float(raw["expected_move_pips"]) if raw.get("expected_move_pips") is not None else None
        ),
    )


def _market_from_mapping(raw: Mapping[str, Any]) -> MarketContext:
    return MarketContext(
        spread_pips=float(raw["spread_pips"]),
        spread_history=tuple(float(value) for value in raw.get("spread_history", ())),
        htf_supports=bool(raw.get("htf_supports", True)),
        mtf_confirms=bool(raw.get("mtf_confirms", True)),
        ltf_clean=bool(raw.get("ltf_clean", True)),
        slippage_pips=float(raw.get("slippage_pips", 0.2)),
    )


def _trade_from_mapping(raw: Mapping[str, Any]) -> ClosedTrade:
    return ClosedTrade(
        symbol=str(raw["symbol"]),
        direction=str(raw["direction"]),
        agent_id=str(raw["agent_id"]),
        pnl_pips=float(raw["pnl_pips"]),
        closed_at=_parse_ts(str(raw["closed_at"])),
        session=str(raw.get("session", "")),
        regime=str(raw.get("regime", "")),
        spread_pips=float(raw.get("spread_pips", 0.0)),
        composite_score=float(raw.get("composite_score", 0.0)),
    )


def _load_payload(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SystemExit(f"Unable to read input file {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise SystemExit(f"Input file {path} must contain a JSON object.")
    return payload


def _build_orchestrator(
    payload: Mapping[str, Any],
    direction: str,
    store: Optional[GovernanceStore],
) -> MetaOrchestrator:
    candles = {
        str(symbol): [candle_from_mapping(row) for row in rows]
        for symbol, rows in dict(payload.get("candles", {})).items()
    }
    provider = ProposalDirectionProvider() if direction == "proposal" else FixedDirectionProvider(direction)
    return MetaOrchestrator(
        candle_source=StaticCandleSource(candles),
        direction_provider=provider,
        config=load_governance_config(),
        store=store,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FX trade governance pipeline CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")
    parser.add_argument("--no-db", action="store_true", help="Run with in-memory state only")

    subparsers = parser.add_subparsers(dest="command", required=True)

    evaluate_cmd = subparsers.add_parser("evaluate", help="Run proposals through the decision pipeline")
    evaluate_cmd.add_argument("--input", required=True, type=Path, help="JSON file with proposals, markets and candles")
    evaluate_cmd.add_argument(
        "--direction",
        choices=("proposal", "LONG", "SHORT", "NEUTRAL"),
        default="proposal",
        help="Direction provider answer (default: trust the proposal)",
    )
    evaluate_cmd.add_argument("--now", type=_parse_ts, default=None)

    trades_cmd = subparsers.add_parser("record-trades", help="Feed closed trades into edge memory")
    trades_cmd.add_argument("--input", required=True, type=Path, help="JSON file with a trades list")
    trades_cmd.add_argument("--now", type=_parse_ts, default=None)

    drift_cmd = subparsers.add_parser("drift-scan", help="Scan learned environments for edge drift")
    drift_cmd.add_argument("--no-revert", action="store_true", help="Report critical drift without reverting")
    drift_cmd.add_argument("--now", type=_parse_ts, default=None)

    shadow_cmd = subparsers.add_parser("shadow-validate", help="Record an edge-vs-baseline shadow comparison")
    shadow_cmd.add_argument("--trades", required=True, type=int, help="Shadow trades compared")
    shadow_cmd.add_argument("--edge-expectancy", required=True, type=float)
    shadow_cmd.add_argument("--baseline-expectancy", required=True, type=float)
    shadow_cmd.add_argument("--edge-max-dd", required=True, type=float)
    shadow_cmd.add_argument("--baseline-max-dd", required=True, type=float)
    shadow_cmd.add_argument("--decile-slope", required=True, type=float, help="Composite decile expectancy slope")
    shadow_cmd.add_argument("--now", type=_parse_ts, default=None)

    clear_cmd = subparsers.add_parser("clear-reversion", help="Re-validate a reverted environment")
    clear_cmd.add_argument("--environment", required=True, help="Environment signature")
    clear_cmd.add_argument("--now", type=_parse_ts, default=None)

    status_cmd = subparsers.add_parser("status", help="Print orchestrator status")
    status_cmd.add_argument("--now", type=_parse_ts, default=None)

    return parser


def _run(args: argparse.Namespace, store: Optional[GovernanceStore]) -> int:
    payload = _load_payload(args.input) if getattr(args, "input", None) else {}
    orchestrator = _build_orchestrator(payload, getattr(args, "direction", "proposal"), store)
    if store is not None:
        orchestrator.load_state()

    if args.command == "evaluate":
        trade_history = [_trade_from_mapping(row) for row in payload.get("trade_history", ())]
        items = [
            (_proposal_from_mapping(item["proposal"]), _market_from_mapping(item["market"]))
            for item in payload.get("items", ())
        ]
        decisions = orchestrator.evaluate_batch(items, trade_history, now=args.now)
        output = {
            "decisions": [decision.as_dict() for decision in decisions],
            "executed": sum(1 for decision in decisions if decision.executed),
        }
        print(json.dumps(output, sort_keys=True, default=str))
        return 0

    if args.command == "record-trades":
        trades = [_trade_from_mapping(row) for row in payload.get("trades", ())]
        touched = orchestrator.record_closed_trades(trades, now=args.now)
        if store is not None:
            orchestrator.save_state(now=args.now)
        print(json.dumps({"trades": len(trades), "environments_updated": touched}, sort_keys=True))
        return 0

    if args.command == "drift-scan":
        scan = orchestrator.run_drift_scan(now=args.now, auto_revert=not args.no_revert)
        if store is not None:
            orchestrator.save_state(now=args.now)
        print(json.dumps(asdict(scan), sort_keys=True, default=str))
        return 2 if scan.critical_alerts else 0

    if args.command == "shadow-validate":
        validation = orchestrator.update_shadow_validation(
            args.trades,
            args.edge_expectancy,
            args.baseline_expectancy,
            args.edge_max_dd,
            args.baseline_max_dd,
            args.decile_slope,
        )
        if store is not None:
            orchestrator.save_state(now=args.now)
        print(json.dumps(asdict(validation), sort_keys=True))
        return 0 if validation.validated else 2

    if args.command == "clear-reversion":
        cleared = orchestrator.clear_reversion(args.environment, now=args.now)
        if store is not None and cleared:
            orchestrator.save_state(now=args.now)
        print(json.dumps({"environment": args.environment, "cleared": cleared}, sort_keys=True))
        return 0 if cleared else 1

    status = orchestrator.status(now=args.now)
    print(json.dumps(asdict(status), sort_keys=True, default=str))
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=os.getenv("GOVERNANCE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    if args.no_db:
        return _run(args, None)

    conn = _resolve_connection(args)
    db = PsycopgGovernanceDatabase(conn)
    try:
        result = _run(args, GovernanceStore(db))
        db.commit()
        return result
    except Exception:
        logger.exception("Governance CLI command failed", extra={"command": args.command})
        db.rollback()
        raise
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
