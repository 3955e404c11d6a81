"""Key/value and row persistence for governance state."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Mapping, Optional, Protocol, Sequence

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")

# Insertable tables, their columns and the column used for recency ordering.
TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "governance_decision": (
        "decision_id",
        "proposal_id",
        "symbol",
        "direction",
        "agent_id",
        "status",
        "decided_layer",
        "governance_decision",
        "composite_score",
        "risk_label",
        "position_multiplier",
        "reasons",
        "decided_at",
    ),
    "edge_reversion": (
        "reversion_id",
        "environment_signature",
        "reverted_at",
        "reason",
        "previous_confidence",
        "previous_allocation",
        "new_allocation",
    ),
    "closed_trade": (
        "trade_id",
        "symbol",
        "direction",
        "agent_id",
        "pnl_pips",
        "closed_at",
        "session",
        "regime",
        "spread_pips",
        "composite_score",
    ),
}
TABLE_ORDER_COLUMN: dict[str, str] = {
    "governance_decision": "decided_at",
    "edge_reversion": "reverted_at",
    "closed_trade": "closed_at",
}
TABLE_PRIMARY_KEY: dict[str, str] = {
    "governance_decision": "decision_id",
    "edge_reversion": "reversion_id",
    "closed_trade": "trade_id",
}
JSON_COLUMNS = frozenset({"reasons"})


class StoreError(RuntimeError):
    """Raised when a persistence operation fails or is malformed."""


class GovernanceDatabase(Protocol):
    """Minimal DB protocol for governance persistence."""

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Fetch all rows."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute a write statement."""


def _convert_named_params(sql: str) -> str:
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


class PsycopgGovernanceDatabase:
    """psycopg adapter implementing GovernanceDatabase."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = _convert_named_params(sql)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(converted, dict(params))
            return [dict(row) for row in cur.fetchall()]

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = _convert_named_params(sql)
        with self.conn.cursor() as cur:
            cur.execute(converted, dict(params))


def _decode_payload(value: Any) -> dict[str, Any]:
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    if not isinstance(value, dict):
        raise StoreError(f"Stored payload must be a JSON object, got {type(value).__name__}")
    return value


class GovernanceStore:
    """get/upsert over governance_state plus append/query over audit tables."""

    def __init__(self, db: GovernanceDatabase) -> None:
        self.db = db

    def get(self, state_type: str, key: str) -> dict[str, Any] | None:
        try:
            row = self.db.fetch_one(
                """
                SELECT payload
                FROM governance_state
                WHERE state_type = :state_type
                  AND state_key = :state_key
                """,
                {"state_type": state_type, "state_key": key},
            )
        except Exception as exc:
            logger.exception("Governance state read failed", extra={"state_type": state_type, "key": key})
            raise StoreError(f"Failed to read {state_type}/{key}") from exc
        if row is None:
            return None
        return _decode_payload(row["payload"])

    def upsert(
        self,
        state_type: str,
        key: str,
        payload: Mapping[str, Any],
        now: datetime | None = None,
    ) -> None:
        params = {
            "state_type": state_type,
            "state_key": key,
            "payload": json.dumps(dict(payload), sort_keys=True),
            "updated_at": now or datetime.now(timezone.utc),
        }
        try:
            self.db.execute(
                """
                INSERT INTO governance_state (state_type, state_key, payload, updated_at)
                VALUES (:state_type, :state_key, CAST(:payload AS JSONB), :updated_at)
                ON CONFLICT (state_type, state_key)
                DO UPDATE SET payload = EXCLUDED.payload, updated_at = EXCLUDED.updated_at
                """,
                params,
            )
        except Exception as exc:
            logger.exception("Governance state write failed", extra={"state_type": state_type, "key": key})
            raise StoreError(f"Failed to write {state_type}/{key}") from exc

    def insert(self, table: str, row: Mapping[str, Any]) -> bool:
        """Append one audit row; False when its primary key is already stored."""
        columns = _checked_columns(table, row.keys())
        key = TABLE_PRIMARY_KEY[table]
        if key not in columns:
            raise StoreError(f"Rows for {table} require {key}")
        params: dict[str, Any] = {}
        placeholders = []
        for column in columns:
            value = row[column]
            if column in JSON_COLUMNS:
                params[column] = json.dumps(value)
                placeholders.append(f"CAST(:{column} AS JSONB)")
            else:
                params[column] = value
                placeholders.append(f":{column}")
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(placeholders)}) "
            f"ON CONFLICT ({key}) DO NOTHING RETURNING {key}"
        )
        try:
            inserted = self.db.fetch_one(sql, params)
        except Exception as exc:
            logger.exception("Governance row insert failed", extra={"table": table})
            raise StoreError(f"Failed to insert into {table}") from exc
        if inserted is None:
            logger.debug("Governance row already stored", extra={"table": table, "key": str(params[key])})
        return inserted is not None

    def query(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        """Equality-filtered rows, most recent first."""
        filters = dict(filters or {})
        columns = _checked_columns(table, filters.keys())
        if limit <= 0:
            raise StoreError("limit must be positive")
        where = " AND ".join(f"{column} = :{column}" for column in columns)
        sql = f"SELECT {', '.join(TABLE_COLUMNS[table])} FROM {table}"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {TABLE_ORDER_COLUMN[table]} DESC LIMIT :limit"
        try:
            rows = self.db.fetch_all(sql, {**filters, "limit": limit})
        except Exception as exc:
            logger.exception("Governance row query failed", extra={"table": table})
            raise StoreError(f"Failed to query {table}") from exc
        return [dict(row) for row in rows]


def _checked_columns(table: str, names: Any) -> list[str]:
    if table not in TABLE_COLUMNS:
        raise StoreError(f"Unknown governance table: {table}")
    allowed = TABLE_COLUMNS[table]
    requested = list(names)
    unknown = sorted(set(requested) - set(allowed))
    if unknown:
        raise StoreError(f"Unknown columns for {table}: {unknown}")
    return [column for column in allowed if column in requested]
