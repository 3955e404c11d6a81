"""Trade governance and adaptive risk allocation core."""

from __future__ import annotations
