"""Payment authorization model: a provider-side hold of funds for one intervention."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, DateTime, ForeignKey, Index, JSON, text
from sqlalchemy.orm import Mapped, mapped_column

from fieldops.models.base import Base, ULIDMixin

PENDING = "pending"
AUTHORIZED = "authorized"
CAPTURED = "captured"
CANCELLED = "cancelled"
FAILED = "failed"

STATUSES = (PENDING, AUTHORIZED, CAPTURED, CANCELLED, FAILED)
ACTIVE_STATUSES = (PENDING, AUTHORIZED)


class PaymentAuthorization(Base, ULIDMixin):
    __tablename__ = "payment_authorizations"
    __table_args__ = (
        # At most one active hold per intervention.
        Index(
            "uq_payment_authorizations_one_active",
            "intervention_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'authorized')"),
            postgresql_where=text("status IN ('pending', 'authorized')"),
        ),
    )

    intervention_id: Mapped[str] = mapped_column(String(26), ForeignKey("interventions.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="eur")
    status: Mapped[str] = mapped_column(String(20), default=PENDING)
    customer_email: Mapped[str] = mapped_column(String(255), default="")
    provider_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)
    captured_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True, default=None)
    # "metadata" is reserved on declarative classes.
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
