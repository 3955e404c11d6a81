"""Closed trade history and edge reversion model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Index, Numeric, PrimaryKeyConstraint, Text, desc
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import trade_direction_enum

logger = logging.getLogger(__name__)


class ClosedTradeRecord(Base):
    """Realized trade outcome feeding edge memory and governance history."""

    __tablename__ = "closed_trade"
    __table_args__ = (
        PrimaryKeyConstraint("trade_id", name="pk_closed_trade"),
        CheckConstraint("symbol = upper(symbol)", name="ck_closed_trade_symbol_upper"),
        CheckConstraint("spread_pips >= 0", name="ck_closed_trade_spread_non_negative"),
        Index("idx_closed_trade_symbol_closed_desc", "symbol", desc("closed_at")),
        Index("idx_closed_trade_agent_closed_desc", "agent_id", desc("closed_at")),
    )

    trade_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    symbol: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(trade_direction_enum, nullable=False)
    agent_id: Mapped[str] = mapped_column(Text, nullable=False)
    pnl_pips: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    session: Mapped[str] = mapped_column(Text, nullable=False)
    regime: Mapped[str] = mapped_column(Text, nullable=False)
    spread_pips: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    composite_score: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)


class EdgeReversion(Base):
    """Append-only record of an environment returned to baseline allocation."""

    __tablename__ = "edge_reversion"
    __table_args__ = (
        PrimaryKeyConstraint("reversion_id", name="pk_edge_reversion"),
        CheckConstraint(
            "previous_confidence >= 0 AND previous_confidence <= 1",
            name="ck_edge_reversion_confidence_range",
        ),
        CheckConstraint("length(btrim(reason)) > 0", name="ck_edge_reversion_reason_not_blank"),
        Index("idx_edge_reversion_reverted_desc", desc("reverted_at")),
        Index("idx_edge_reversion_environment", "environment_signature"),
    )

    reversion_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    environment_signature: Mapped[str] = mapped_column(Text, nullable=False)
    reverted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    previous_confidence: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    previous_allocation: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    new_allocation: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
