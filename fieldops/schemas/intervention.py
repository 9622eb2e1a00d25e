from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Literal
from pydantic import BaseModel, Field


class InterventionCreate(BaseModel):
    client_id: str = Field(min_length=1)
    category: Literal["locksmith", "plumbing", "electricity", "glazing", "heating", "aircon"]
    priority: Literal["normal", "urgent", "emergency"] = "normal"
    title: str = ""
    description: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    estimated_price: Decimal | None = Field(default=None, ge=0)
    scheduled_at: datetime | None = None
    auto_dispatch: bool = True


class InterventionRead(BaseModel):
    id: str
    client_id: str
    technician_id: str | None = None
    category: str
    priority: str
    status: str
    title: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    latitude: float | None = None
    longitude: float | None = None
    estimated_price: Decimal | None = None
    final_price: Decimal | None = None
    is_active: bool = True
    requires_manual_dispatch: bool = False
    scheduled_at: datetime | None = None
    accepted_at: datetime | None = None
    response_time_seconds: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    released_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InterventionCancel(BaseModel):
    reason: str = ""


class InterventionStatusUpdate(BaseModel):
    technician_id: str
    status: Literal["en_route", "in_progress", "completed"]
    final_price: Decimal | None = Field(default=None, ge=0)
