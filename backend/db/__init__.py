"""Governance persistence schema: ORM models and the Alembic migration."""

from __future__ import annotations

import logging

from backend.db.base import Base
from backend.db import models
from backend.db.models import ClosedTradeRecord, EdgeReversion, GovernanceDecisionRecord, GovernanceState

logger = logging.getLogger(__name__)

__all__ = [
    "Base",
    "ClosedTradeRecord",
    "EdgeReversion",
    "GovernanceDecisionRecord",
    "GovernanceState",
    "models",
]
