"""Intervention model: a client's service request, the aggregate root."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Boolean, Float, Integer, Numeric, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from fieldops.models.base import Base, ULIDMixin

NEW = "new"
ASSIGNED = "assigned"
EN_ROUTE = "en_route"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUSES = (NEW, ASSIGNED, EN_ROUTE, IN_PROGRESS, COMPLETED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)
# A technician reference is only valid in these states.
STAFFED_STATUSES = (ASSIGNED, EN_ROUTE, IN_PROGRESS, COMPLETED)
# Clients may cancel until work has started.
CANCELLABLE_STATUSES = (NEW, ASSIGNED, EN_ROUTE)
# Assigned technicians may hand the job back until work has started.
RELEASABLE_STATUSES = (ASSIGNED, EN_ROUTE)
# Technician progression: current -> next.
PROGRESSION = {ASSIGNED: EN_ROUTE, EN_ROUTE: IN_PROGRESS, IN_PROGRESS: COMPLETED}

CATEGORIES = ("locksmith", "plumbing", "electricity", "glazing", "heating", "aircon")
PRIORITIES = ("normal", "urgent", "emergency")


class Intervention(Base, ULIDMixin):
    __tablename__ = "interventions"

    client_id: Mapped[str] = mapped_column(String(64), index=True)
    technician_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("technicians.id"), nullable=True, default=None
    )
    category: Mapped[str] = mapped_column(String(30))
    priority: Mapped[str] = mapped_column(String(20), default="normal")
    status: Mapped[str] = mapped_column(String(20), default=NEW, index=True)
    title: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    address: Mapped[str] = mapped_column(String(300), default="")
    city: Mapped[str] = mapped_column(String(120), default="")
    postal_code: Mapped[str] = mapped_column(String(20), default="")
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
    estimated_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True, default=None)
    final_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    requires_manual_dispatch: Mapped[bool] = mapped_column(Boolean, default=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    response_time_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    cancellation_reason: Mapped[str] = mapped_column(Text, default="")
    # Last technician hand-back; the intervention is re-dispatched afterwards.
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    release_reason: Mapped[str] = mapped_column(Text, default="")
