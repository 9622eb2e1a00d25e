"""Intervention API: create, read, client cancellation, technician progression."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.db import crud
from fieldops.db.engine import get_db
from fieldops.dependencies import get_intervention_service, get_orchestrator
from fieldops.schemas import (
    DispatchResultRead, InterventionCancel, InterventionCreate, InterventionRead,
    InterventionStatusUpdate,
)
from fieldops.services import dispatch as outcomes
from fieldops.services.dispatch import DispatchOrchestrator
from fieldops.services.interventions import InterventionService

router = APIRouter(prefix="/api/interventions", tags=["interventions"])


@router.post("", status_code=201)
async def create_intervention(
    body: InterventionCreate,
    service: InterventionService = Depends(get_intervention_service),
):
    intervention, dispatch = await service.create(body)
    return {
        "intervention": InterventionRead.model_validate(intervention).model_dump(mode="json"),
        "dispatch": DispatchResultRead.model_validate(dispatch).model_dump(mode="json") if dispatch else None,
    }


@router.get("/{intervention_id}", response_model=InterventionRead)
async def get_intervention(intervention_id: str, db: AsyncSession = Depends(get_db)):
    intervention = await crud.get_intervention(db, intervention_id)
    if not intervention:
        raise HTTPException(404, "Intervention not found")
    return intervention


@router.post("/{intervention_id}/cancel")
async def cancel_intervention(
    intervention_id: str,
    body: InterventionCancel | None = None,
    service: InterventionService = Depends(get_intervention_service),
):
    reason = body.reason if body else ""
    intervention, payment = await service.cancel(intervention_id, reason)
    return {
        "intervention": InterventionRead.model_validate(intervention).model_dump(mode="json"),
        "payment_cancelled": bool(payment and payment.cancelled),
    }


@router.post("/{intervention_id}/status", response_model=InterventionRead)
async def update_status(
    intervention_id: str,
    body: InterventionStatusUpdate,
    db: AsyncSession = Depends(get_db),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.advance(intervention_id, body.technician_id, body.status, body.final_price)
    if result.outcome == outcomes.NOT_FOUND:
        raise HTTPException(404, result.message)
    if result.outcome == outcomes.CONFLICT:
        raise HTTPException(409, result.message)
    return await crud.get_intervention(db, intervention_id)
