from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, Field


class TechnicianCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = ""
    skills: list[str] = []
    latitude: float | None = None
    longitude: float | None = None
    is_available: bool = True
    max_concurrent_interventions: int | None = None
    average_rating: float | None = Field(default=None, ge=0, le=5)


class TechnicianRead(BaseModel):
    id: str
    name: str
    email: str
    phone: str
    skills: list[str] = []
    latitude: float | None = None
    longitude: float | None = None
    is_available: bool
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}
