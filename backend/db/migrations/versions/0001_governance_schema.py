"""Initial schema for the FX trade governance pipeline."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_governance_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE pipeline_status_enum AS ENUM ('EXECUTE', 'SKIP', 'REJECT');",
    "CREATE TYPE governance_decision_enum AS ENUM ('approved', 'throttled', 'rejected');",
    "CREATE TYPE risk_label_enum AS ENUM ('BLOCKED', 'REDUCED', 'NORMAL', 'EDGE_BOOST', 'KILL_SWITCH', 'REVERTED');",
    "CREATE TYPE trade_direction_enum AS ENUM ('LONG', 'SHORT');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE governance_state (
        state_type TEXT NOT NULL,
        state_key TEXT NOT NULL,
        payload JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_governance_state PRIMARY KEY (state_type, state_key),
        CONSTRAINT ck_governance_state_type_not_blank CHECK (length(btrim(state_type)) > 0),
        CONSTRAINT ck_governance_state_key_not_blank CHECK (length(btrim(state_key)) > 0),
        CONSTRAINT ck_governance_state_payload_object CHECK (jsonb_typeof(payload) = 'object')
    );
    """,
    """
    CREATE TABLE governance_decision (
        decision_id UUID NOT NULL,
        proposal_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        direction trade_direction_enum,
        agent_id TEXT NOT NULL,
        status pipeline_status_enum NOT NULL,
        decided_layer TEXT NOT NULL,
        governance_decision governance_decision_enum,
        composite_score NUMERIC(12,6),
        risk_label risk_label_enum,
        position_multiplier NUMERIC(10,4) NOT NULL,
        reasons JSONB NOT NULL,
        decided_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_governance_decision PRIMARY KEY (decision_id),
        CONSTRAINT ck_governance_decision_reasons_required CHECK (status = 'EXECUTE' OR jsonb_array_length(reasons) > 0),
        CONSTRAINT ck_governance_decision_multiplier_non_negative CHECK (position_multiplier >= 0),
        CONSTRAINT ck_governance_decision_non_execute_zero_size CHECK (status = 'EXECUTE' OR position_multiplier = 0)
    );
    """,
    """
    CREATE TABLE closed_trade (
        trade_id UUID NOT NULL,
        symbol TEXT NOT NULL,
        direction trade_direction_enum NOT NULL,
        agent_id TEXT NOT NULL,
        pnl_pips NUMERIC(12,4) NOT NULL,
        closed_at TIMESTAMPTZ NOT NULL,
        session TEXT NOT NULL,
        regime TEXT NOT NULL,
        spread_pips NUMERIC(10,4) NOT NULL,
        composite_score NUMERIC(12,6) NOT NULL,
        CONSTRAINT pk_closed_trade PRIMARY KEY (trade_id),
        CONSTRAINT ck_closed_trade_symbol_upper CHECK (symbol = upper(symbol)),
        CONSTRAINT ck_closed_trade_spread_non_negative CHECK (spread_pips >= 0)
    );
    """,
    """
    CREATE TABLE edge_reversion (
        reversion_id UUID NOT NULL,
        environment_signature TEXT NOT NULL,
        reverted_at TIMESTAMPTZ NOT NULL,
        reason TEXT NOT NULL,
        previous_confidence NUMERIC(6,4) NOT NULL,
        previous_allocation NUMERIC(10,4) NOT NULL,
        new_allocation NUMERIC(10,4) NOT NULL,
        CONSTRAINT pk_edge_reversion PRIMARY KEY (reversion_id),
        CONSTRAINT ck_edge_reversion_confidence_range CHECK (previous_confidence >= 0 AND previous_confidence <= 1),
        CONSTRAINT ck_edge_reversion_reason_not_blank CHECK (length(btrim(reason)) > 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_governance_decision_symbol_decided_desc ON governance_decision USING btree (symbol, decided_at DESC);",
    "CREATE INDEX idx_governance_decision_proposal ON governance_decision USING btree (proposal_id);",
    "CREATE INDEX idx_closed_trade_symbol_closed_desc ON closed_trade USING btree (symbol, closed_at DESC);",
    "CREATE INDEX idx_closed_trade_agent_closed_desc ON closed_trade USING btree (agent_id, closed_at DESC);",
    "CREATE INDEX idx_edge_reversion_reverted_desc ON edge_reversion USING btree (reverted_at DESC);",
    "CREATE INDEX idx_edge_reversion_environment ON edge_reversion USING btree (environment_signature);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only table violation: % on %', TG_OP, TG_TABLE_NAME;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_governance_decision_append_only
    BEFORE UPDATE OR DELETE ON governance_decision
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_closed_trade_append_only
    BEFORE UPDATE OR DELETE ON closed_trade
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_edge_reversion_append_only
    BEFORE UPDATE OR DELETE ON edge_reversion
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the governance schema migration."""

    logger.info("Starting governance schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed governance schema migration upgrade.")


def downgrade() -> None:
    """Revert the governance schema migration."""

    logger.info("Starting governance schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_edge_reversion_append_only ON edge_reversion;",
            "DROP TRIGGER IF EXISTS trg_closed_trade_append_only ON closed_trade;",
            "DROP TRIGGER IF EXISTS trg_governance_decision_append_only ON governance_decision;",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS edge_reversion;",
            "DROP TABLE IF EXISTS closed_trade;",
            "DROP TABLE IF EXISTS governance_decision;",
            "DROP TABLE IF EXISTS governance_state;",
            "DROP TYPE IF EXISTS trade_direction_enum;",
            "DROP TYPE IF EXISTS risk_label_enum;",
            "DROP TYPE IF EXISTS governance_decision_enum;",
            "DROP TYPE IF EXISTS pipeline_status_enum;",
        )
    )
    logger.info("Completed governance schema migration downgrade.")
