"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column

from casewatch.infrastructure.database import Base
from casewatch.config import CaseStatus


class CaseModel(Base):
    """
    Database model for the Case entity (SLA subset).

    Maps to the 'cases' table.
    """
    __tablename__ = "cases"

    # Business identifier, e.g. CASE-2024-01-15-001-123
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    priority: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=CaseStatus.OPEN)

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # SLA tracking
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    breached_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Escalation, written only by escalation sweeps
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_cases_status_due_at", "status", "due_at"),
    )
