"""Unit tests for scripts/governance_cli.py."""

from __future__ import annotations

import argparse
import importlib.util
import json
from pathlib import Path
import runpy
import sys
from typing import Any

import pytest

from tests.utils.fake_db import trending_candles


ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = ROOT / "scripts" / "governance_cli.py"
NOW = "2026-03-02T13:00:00Z"


def _load_cli_module(module_name: str) -> Any:
    spec = importlib.util.spec_from_file_location(module_name, SCRIPT_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


class _FakeCursor:
    def __init__(self, conn: "_FakeConnection", row_factory: Any = None) -> None:
        self._conn = conn
        self._row_factory = row_factory

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        return None

    def execute(self, sql: str, params: Any = None) -> None:
        self._conn.executed.append((sql, params, self._row_factory))

    def fetchall(self) -> list[dict[str, Any]]:
        return list(self._conn.fetchall_rows)


class _FakeConnection:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.fetchall_rows = rows or []
        self.executed: list[tuple[str, Any, Any]] = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self, row_factory: Any = None) -> _FakeCursor:
        return _FakeCursor(self, row_factory=row_factory)

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True

    def close(self) -> None:
        self.closed = True


def _candle_rows(count: int) -> list[dict[str, Any]]:
    return [
        {
            "time": candle.time.isoformat(),
            "open": candle.open,
            "high": candle.high,
            "low": candle.low,
            "close": candle.close,
            "volume": candle.volume,
        }
        for candle in trending_candles(count)
    ]


def _write_json(tmp_path: Path, name: str, payload: Any) -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_import_path_branch_adds_root_when_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    root = str(ROOT)
    monkeypatch.setattr(sys, "path", [entry for entry in sys.path if entry != root])
    runpy.run_path(str(SCRIPT_PATH), run_name="governance_cli_import_missing_root")
    assert root in sys.path


def test_import_main_guard_branch_executes(monkeypatch: pytest.MonkeyPatch) -> None:
    root = str(ROOT)
    monkeypatch.setattr(sys, "path", [root, *[entry for entry in sys.path if entry != root]])
    monkeypatch.setattr(sys, "argv", [str(SCRIPT_PATH), "--help"])
    with pytest.raises(SystemExit) as exc:
        runpy.run_path(str(SCRIPT_PATH), run_name="__main__")
    assert exc.value.code == 0


def test_parse_ts() -> None:
    cli = _load_cli_module("governance_cli_mod_parse")
    assert cli._parse_ts(NOW).isoformat() == "2026-03-02T13:00:00+00:00"
    assert cli._parse_ts("2026-03-02T15:00:00+02:00").isoformat() == "2026-03-02T13:00:00+00:00"

    with pytest.raises(argparse.ArgumentTypeError, match="Invalid timestamp"):
        cli._parse_ts("not-a-timestamp")
    with pytest.raises(argparse.ArgumentTypeError, match="must include timezone"):
        cli._parse_ts("2026-03-02T13:00:00")


def test_resolve_connection_uses_dsn(monkeypatch: pytest.MonkeyPatch) -> None:
    cli = _load_cli_module("governance_cli_mod_conn_dsn")
    expected = _FakeConnection()
    seen: dict[str, Any] = {}

    def _connect(*args: Any, **kwargs: Any) -> _FakeConnection:
        seen["args"] = args
        seen["kwargs"] = kwargs
        return expected

    monkeypatch.setattr(cli.psycopg, "connect", _connect)

    args = argparse.Namespace(dsn="postgresql://test", host=None, port=None, dbname=None, user=None, password=None)
    assert cli._resolve_connection(args) is expected
    assert seen["args"] == ("postgresql://test",)
    assert seen["kwargs"] == {"autocommit": False}


def test_resolve_connection_from_env_and_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    cli = _load_cli_module("governance_cli_mod_conn_env")
    expected = _FakeConnection()
    seen: dict[str, Any] = {}

    def _connect(*args: Any, **kwargs: Any) -> _FakeConnection:
        seen["kwargs"] = kwargs
        return expected

    monkeypatch.setattr(cli.psycopg, "connect", _connect)
    for key in ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TEST_DB_HOST", "localhost")
    monkeypatch.setenv("TEST_DB_PORT", "55432")
    monkeypatch.setenv("TEST_DB_NAME", "governance_test")
    monkeypatch.setenv("TEST_DB_USER", "postgres")
    monkeypatch.setenv("TEST_DB_PASSWORD", "postgres")

    args = argparse.Namespace(dsn=None, host=None, port=None, dbname=None, user=None, password=None)
    assert cli._resolve_connection(args) is expected
    assert seen["kwargs"]["dbname"] == "governance_test"
    assert seen["kwargs"]["autocommit"] is False

    for key in ("TEST_DB_HOST", "TEST_DB_PORT", "TEST_DB_NAME", "TEST_DB_USER", "TEST_DB_PASSWORD"):
        monkeypatch.delenv(key, raising=False)

    with pytest.raises(SystemExit, match="Missing DB connection args"):
        cli._resolve_connection(args)


def test_build_parser_parses_commands(tmp_path: Path) -> None:
    cli = _load_cli_module("governance_cli_mod_parser")
    parser = cli._build_parser()

    parsed = parser.parse_args(["--no-db", "evaluate", "--input", str(tmp_path / "in.json"), "--direction", "SHORT"])
    assert parsed.command == "evaluate"
    assert parsed.no_db is True
    assert parsed.direction == "SHORT"
    assert parsed.now is None

    parsed = parser.parse_args(["drift-scan", "--no-revert", "--now", NOW])
    assert parsed.command == "drift-scan"
    assert parsed.no_revert is True
    assert parsed.now.isoformat() == "2026-03-02T13:00:00+00:00"

    with pytest.raises(SystemExit):
        parser.parse_args(["evaluate", "--input", "x.json", "--direction", "UP"])


def test_load_payload_errors(tmp_path: Path) -> None:
    cli = _load_cli_module("governance_cli_mod_payload")

    with pytest.raises(SystemExit, match="Unable to read input file"):
        cli._load_payload(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(SystemExit, match="Unable to read input file"):
        cli._load_payload(broken)

    with pytest.raises(SystemExit, match="must contain a JSON object"):
        cli._load_payload(_write_json(tmp_path, "list.json", [1, 2]))


def test_mapping_helpers() -> None:
    cli = _load_cli_module("governance_cli_mod_mappings")

    proposal = cli._proposal_from_mapping(
        {"proposal_id": "p-1", "symbol": "EUR_USD", "agent_id": "forex-macro", "timestamp": NOW}
    )
    assert proposal.direction == "LONG"
    assert proposal.expected_move_pips is None

    market = cli._market_from_mapping({"spread_pips": 0.6, "spread_history": [0.5, 0.7], "ltf_clean": False})
    assert market.spread_history == (0.5, 0.7)
    assert market.ltf_clean is False
    assert market.slippage_pips == 0.2

    trade = cli._trade_from_mapping(
        {"symbol": "EUR_USD", "direction": "LONG", "agent_id": "forex-macro", "pnl_pips": "2.5", "closed_at": NOW}
    )
    assert trade.pnl_pips == 2.5
    assert trade.won


def test_main_evaluate_without_db(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    cli = _load_cli_module("governance_cli_mod_main_evaluate")
    payload = {
        "candles": {"EUR_USD": _candle_rows(10)},
        "items": [
            {
                "proposal": {"proposal_id": "p-1", "symbol": "EUR_USD", "agent_id": "forex-macro", "timestamp": NOW},
                "market": {"spread_pips": 0.5},
            },
            {
                "proposal": {"proposal_id": "p-2", "symbol": "GBP_USD", "agent_id": "forex-macro", "timestamp": NOW},
                "market": {"spread_pips": 0.9},
            },
        ],
    }
    path = _write_json(tmp_path, "evaluate.json", payload)
    monkeypatch.setattr(sys, "argv", ["governance_cli.py", "--no-db", "evaluate", "--input", str(path), "--now", NOW])

    assert cli.main() == 0
    output = json.loads(capsys.readouterr().out.strip())
    assert output["executed"] == 0
    assert [decision["proposal_id"] for decision in output["decisions"]] == ["p-1", "p-2"]
    assert output["decisions"][0]["reasons"] == ["Insufficient candle history: 10 < 60 bars"]
    assert output["decisions"][1]["reasons"] == ["Insufficient candle history: 0 < 60 bars"]
    assert output["decisions"][0]["decided_at"] == "2026-03-02T13:00:00Z"


def test_main_record_trades_without_db(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    cli = _load_cli_module("governance_cli_mod_main_trades")
    path = _write_json(
        tmp_path,
        "trades.json",
        {
            "trades": [
                {
                    "symbol": "EUR_USD",
                    "direction": "LONG",
                    "agent_id": "forex-macro",
                    "pnl_pips": 4.0,
                    "closed_at": NOW,
                    "session": "ny-overlap",
                    "regime": "expansion",
                }
            ]
        },
    )
    monkeypatch.setattr(sys, "argv", ["governance_cli.py", "--no-db", "record-trades", "--input", str(path)])

    assert cli.main() == 0
    output = json.loads(capsys.readouterr().out.strip())
    assert output == {"trades": 1, "environments_updated": ["ny-overlap|expansion|EUR_USD|LONG|forex-macro"]}


def test_main_status_with_db_commits_and_closes(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    cli = _load_cli_module("governance_cli_mod_main_status")
    conn = _FakeConnection()
    monkeypatch.setattr(cli, "_resolve_connection", lambda _: conn)
    monkeypatch.setattr(sys, "argv", ["governance_cli.py", "--dsn", "postgresql://x", "status", "--now", NOW])

    assert cli.main() == 0
    output = json.loads(capsys.readouterr().out.strip())
    assert output["deployment_mode"] == "SHADOW_LEARNING"
    assert output["adaptive_edge_active"] is True
    assert set(output["layers"]) == {"L1", "L2", "L3", "L4", "EXECUTION"}
    assert conn.committed is True
    assert conn.closed is True
    assert any("governance_state" in sql for sql, _, _ in conn.executed)


def test_main_drift_scan_saves_state(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    cli = _load_cli_module("governance_cli_mod_main_drift")
    conn = _FakeConnection()
    monkeypatch.setattr(cli, "_resolve_connection", lambda _: conn)
    monkeypatch.setattr(sys, "argv", ["governance_cli.py", "drift-scan", "--now", NOW])

    assert cli.main() == 0
    output = json.loads(capsys.readouterr().out.strip())
    assert output["environments_monitored"] == 0
    assert output["alerts"] == []
    upserts = [sql for sql, _, _ in conn.executed if "ON CONFLICT" in sql]
    assert len(upserts) == 2
    assert conn.committed is True


def test_main_rolls_back_and_closes_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    cli = _load_cli_module("governance_cli_mod_main_failure")
    conn = _FakeConnection()
    monkeypatch.setattr(cli, "_resolve_connection", lambda _: conn)

    def _boom(args: argparse.Namespace, store: Any) -> int:
        raise RuntimeError("boom")

    monkeypatch.setattr(cli, "_run", _boom)
    monkeypatch.setattr(sys, "argv", ["governance_cli.py", "status"])

    with pytest.raises(RuntimeError, match="boom"):
        cli.main()
    assert conn.rolled_back is True
    assert conn.committed is False
    assert conn.closed is True


def test_main_shadow_validate_saves_state(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    cli = _load_cli_module("governance_cli_mod_main_shadow")
    conn = _FakeConnection()
    monkeypatch.setattr(cli, "_resolve_connection", lambda _: conn)
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "governance_cli.py",
            "shadow-validate",
            "--trades",
            "150",
            "--edge-expectancy",
            "3.0",
            "--baseline-expectancy",
            "2.0",
            "--edge-max-dd",
            "5.0",
            "--baseline-max-dd",
            "10.0",
            "--decile-slope",
            "0.02",
            "--now",
            NOW,
        ],
    )

    assert cli.main() == 0
    output = json.loads(capsys.readouterr().out.strip())
    assert output["validated"] is True
    assert output["expectancy_ratio"] == 1.5
    saved = [params for sql, params, _ in conn.executed if "ON CONFLICT" in sql]
    adaptive = json.loads(saved[-1]["payload"])
    assert adaptive["shadow_validation"]["validated"] is True
    assert conn.committed is True


def test_main_shadow_validate_failure_exit_code(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    cli = _load_cli_module("governance_cli_mod_main_shadow_fail")
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "governance_cli.py",
            "--no-db",
            "shadow-validate",
            "--trades",
            "20",
            "--edge-expectancy",
            "1.0",
            "--baseline-expectancy",
            "2.0",
            "--edge-max-dd",
            "5.0",
            "--baseline-max-dd",
            "10.0",
            "--decile-slope",
            "0.02",
        ],
    )

    assert cli.main() == 2
    output = json.loads(capsys.readouterr().out.strip())
    assert output["fail_reasons"] == ["Shadow trades 20 < 100 required", "Expectancy ratio 0.50 < 1.2"]


def test_main_clear_reversion_unknown_environment(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    cli = _load_cli_module("governance_cli_mod_main_clear")
    monkeypatch.setattr(sys, "argv", ["governance_cli.py", "--no-db", "clear-reversion", "--environment", "env"])

    assert cli.main() == 1
    assert json.loads(capsys.readouterr().out.strip()) == {"cleared": False, "environment": "env"}
