"""Pipeline decision audit model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Numeric, PrimaryKeyConstraint, Text, desc
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import (
    governance_decision_enum,
    pipeline_status_enum,
    risk_label_enum,
    trade_direction_enum,
)

logger = logging.getLogger(__name__)


class GovernanceDecisionRecord(Base):
    """Append-only audit row for every orchestrated proposal."""

    __tablename__ = "governance_decision"
    __table_args__ = (
        PrimaryKeyConstraint("decision_id", name="pk_governance_decision"),
        CheckConstraint(
            "status = 'EXECUTE' OR jsonb_array_length(reasons) > 0",
            name="ck_governance_decision_reasons_required",
        ),
        CheckConstraint(
            "position_multiplier >= 0",
            name="ck_governance_decision_multiplier_non_negative",
        ),
        CheckConstraint(
            "status = 'EXECUTE' OR position_multiplier = 0",
            name="ck_governance_decision_non_execute_zero_size",
        ),
        Index("idx_governance_decision_symbol_decided_desc", "symbol", desc("decided_at")),
        Index("idx_governance_decision_proposal", "proposal_id"),
    )

    decision_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    proposal_id: Mapped[str] = mapped_column(Text, nullable=False)
    symbol: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[Optional[str]] = mapped_column(trade_direction_enum, nullable=True)
    agent_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(pipeline_status_enum, nullable=False)
    decided_layer: Mapped[str] = mapped_column(Text, nullable=False)
    governance_decision: Mapped[Optional[str]] = mapped_column(governance_decision_enum, nullable=True)
    composite_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 6), nullable=True)
    risk_label: Mapped[Optional[str]] = mapped_column(risk_label_enum, nullable=True)
    position_multiplier: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    reasons: Mapped[list[Any]] = mapped_column(JSONB, nullable=False)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
