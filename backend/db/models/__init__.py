"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.decision import GovernanceDecisionRecord
from backend.db.models.learning import ClosedTradeRecord, EdgeReversion
from backend.db.models.state import GovernanceState

logger = logging.getLogger(__name__)

__all__ = [
    "ClosedTradeRecord",
    "EdgeReversion",
    "GovernanceDecisionRecord",
    "GovernanceState",
]
