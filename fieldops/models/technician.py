"""Technician model: the candidate pool for dispatch offers."""

from __future__ import annotations

from sqlalchemy import String, Boolean, Float, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column

from fieldops.models.base import Base, ULIDMixin


class Technician(Base, ULIDMixin):
    __tablename__ = "technicians"

    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str] = mapped_column(String(255))
    phone: Mapped[str] = mapped_column(String(50), default="")
    skills: Mapped[list] = mapped_column(JSON, default=list)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    max_concurrent_interventions: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    average_rating: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
