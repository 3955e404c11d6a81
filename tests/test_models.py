"""Unit tests for SQLAlchemy model registration against the store contract."""

from __future__ import annotations

from backend.db import Base
from backend.db.models import ClosedTradeRecord, EdgeReversion, GovernanceDecisionRecord, GovernanceState
from governance.store import TABLE_COLUMNS


def test_metadata_registers_governance_tables() -> None:
    assert set(Base.metadata.tables) == {"governance_state", "governance_decision", "closed_trade", "edge_reversion"}


def test_audit_models_match_store_columns() -> None:
    for model in (GovernanceDecisionRecord, ClosedTradeRecord, EdgeReversion):
        table = model.__table__
        assert set(table.columns.keys()) == set(TABLE_COLUMNS[table.name])


def test_state_model_primary_key() -> None:
    table = GovernanceState.__table__
    assert [column.name for column in table.primary_key.columns] == ["state_type", "state_key"]
    assert not table.c.payload.nullable


def test_decision_model_nullable_columns() -> None:
    table = GovernanceDecisionRecord.__table__
    nullable = {column.name for column in table.columns if column.nullable}
    assert nullable == {"direction", "governance_decision", "composite_score", "risk_label"}
