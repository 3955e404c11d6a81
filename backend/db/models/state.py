"""Key/value governance state model definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, PrimaryKeyConstraint, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class GovernanceState(Base):
    """Latest payload per (state_type, state_key), e.g. edge memory snapshots."""

    __tablename__ = "governance_state"
    __table_args__ = (
        PrimaryKeyConstraint("state_type", "state_key", name="pk_governance_state"),
        CheckConstraint("length(btrim(state_type)) > 0", name="ck_governance_state_type_not_blank"),
        CheckConstraint("length(btrim(state_key)) > 0", name="ck_governance_state_key_not_blank"),
        CheckConstraint("jsonb_typeof(payload) = 'object'", name="ck_governance_state_payload_object"),
    )

    state_type: Mapped[str] = mapped_column(Text, primary_key=True)
    state_key: Mapped[str] = mapped_column(Text, primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
