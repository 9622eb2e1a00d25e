from __future__ import annotations
from datetime import datetime
from typing import Any
from pydantic import BaseModel


class TechnicianAction(BaseModel):
    technician_id: str
    reason: str = ""


class DispatchAttemptRead(BaseModel):
    id: str
    intervention_id: str
    technician_id: str
    status: str  # pending | accepted | declined | timed_out | cancelled
    attempt_order: int
    score: float | None = None
    created_at: datetime
    timeout_at: datetime
    resolved_at: datetime | None = None
    decline_reason: str = ""

    model_config = {"from_attributes": True}


class DispatchResultRead(BaseModel):
    intervention_id: str
    outcome: str
    message: str = ""
    technician_id: str | None = None
    attempt_id: str | None = None
    timeout_at: datetime | None = None
    requires_manual_assignment: bool = False

    model_config = {"from_attributes": True}


class ScanResultRead(BaseModel):
    intervention_id: str
    ok: bool
    result: dict[str, Any] | None = None
    error: str | None = None


class ScanReportRead(BaseModel):
    processed: int
    results: list[ScanResultRead] = []
