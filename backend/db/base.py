"""SQLAlchemy declarative base for the governance state and audit tables."""

from __future__ import annotations

import logging

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

# Matches the constraint names emitted by migration 0001_governance_schema.
GOVERNANCE_NAMING_CONVENTION: dict[str, str] = {
    "pk": "pk_%(table_name)s",
    "ix": "idx_%(table_name)s_%(column_0_N_name)s",
}

metadata = MetaData(naming_convention=GOVERNANCE_NAMING_CONVENTION)


class Base(DeclarativeBase):
    """Declarative base shared by every governance model."""

    metadata = metadata
