"""PostgreSQL native enum contracts for the governance database schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class PipelineStatus(str, enum.Enum):
    """Terminal status of one orchestrated proposal."""

    EXECUTE = "EXECUTE"
    SKIP = "SKIP"
    REJECT = "REJECT"


class GovernanceDecision(str, enum.Enum):
    """Governance layer verdict."""

    APPROVED = "approved"
    THROTTLED = "throttled"
    REJECTED = "rejected"


class RiskLabel(str, enum.Enum):
    """Adaptive allocation label recorded with a decision."""

    BLOCKED = "BLOCKED"
    REDUCED = "REDUCED"
    NORMAL = "NORMAL"
    EDGE_BOOST = "EDGE_BOOST"
    KILL_SWITCH = "KILL_SWITCH"
    REVERTED = "REVERTED"


class TradeDirection(str, enum.Enum):
    """Resolved trade direction."""

    LONG = "LONG"
    SHORT = "SHORT"


pipeline_status_enum = PGEnum(PipelineStatus, name="pipeline_status_enum")
governance_decision_enum = PGEnum(
    GovernanceDecision,
    name="governance_decision_enum",
    values_callable=lambda members: [member.value for member in members],
)
risk_label_enum = PGEnum(RiskLabel, name="risk_label_enum")
trade_direction_enum = PGEnum(TradeDirection, name="trade_direction_enum")
