"""Dispatch attempt model: one time-boxed offer of an intervention to one technician."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, Float, Integer, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from fieldops.models.base import Base, ULIDMixin

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
TIMED_OUT = "timed_out"
CANCELLED = "cancelled"

STATUSES = (PENDING, ACCEPTED, DECLINED, TIMED_OUT, CANCELLED)
TERMINAL_STATUSES = (ACCEPTED, DECLINED, TIMED_OUT, CANCELLED)


class DispatchAttempt(Base, ULIDMixin):
    __tablename__ = "dispatch_attempts"
    __table_args__ = (
        # At most one pending offer per intervention.
        Index(
            "uq_dispatch_attempts_one_pending",
            "intervention_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_dispatch_attempts_status_timeout", "status", "timeout_at"),
    )

    intervention_id: Mapped[str] = mapped_column(String(26), ForeignKey("interventions.id"), index=True)
    technician_id: Mapped[str] = mapped_column(String(26), ForeignKey("technicians.id"))
    status: Mapped[str] = mapped_column(String(20), default=PENDING)
    attempt_order: Mapped[int] = mapped_column(Integer, default=1)
    score: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
    timeout_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    decline_reason: Mapped[str] = mapped_column(Text, default="")
