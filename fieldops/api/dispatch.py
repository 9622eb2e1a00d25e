"""Dispatch API: offers, technician responses and hand-backs, manual assignment, timeout sweep."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldops.db import crud
from fieldops.db.engine import get_db
from fieldops.dependencies import get_orchestrator, get_session_factory, get_settings_dep, require_service_key
from fieldops.schemas import (
    DispatchAttemptRead, DispatchResultRead, InterventionRead, ScanReportRead, TechnicianAction,
)
from fieldops.services import dispatch as outcomes
from fieldops.services.dispatch import DispatchOrchestrator, DispatchResult
from fieldops.services.timeout_scanner import TimeoutScanner

router = APIRouter(tags=["dispatch"])


def _respond(result: DispatchResult) -> DispatchResultRead:
    if result.outcome == outcomes.NOT_FOUND:
        raise HTTPException(404, result.message)
    if result.outcome == outcomes.CONFLICT:
        raise HTTPException(409, result.message)
    return DispatchResultRead.model_validate(result)


@router.post("/api/interventions/{intervention_id}/dispatch", response_model=DispatchResultRead)
async def dispatch_intervention(
    intervention_id: str,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.dispatch(intervention_id))


@router.post("/api/interventions/{intervention_id}/accept", response_model=DispatchResultRead)
async def accept_offer(
    intervention_id: str,
    body: TechnicianAction,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.accept(intervention_id, body.technician_id))


@router.post("/api/interventions/{intervention_id}/decline", response_model=DispatchResultRead)
async def decline_offer(
    intervention_id: str,
    body: TechnicianAction,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.decline(intervention_id, body.technician_id, body.reason))


@router.post("/api/interventions/{intervention_id}/release", response_model=DispatchResultRead)
async def release_assignment(
    intervention_id: str,
    body: TechnicianAction,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.release(intervention_id, body.technician_id, body.reason))


@router.post(
    "/api/interventions/{intervention_id}/assign",
    response_model=DispatchResultRead,
    dependencies=[Depends(require_service_key)],
)
async def assign_technician(
    intervention_id: str,
    body: TechnicianAction,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.assign_manually(intervention_id, body.technician_id))


@router.get("/api/interventions/{intervention_id}/attempts", response_model=list[DispatchAttemptRead])
async def list_attempts(intervention_id: str, db: AsyncSession = Depends(get_db)):
    if await crud.get_intervention(db, intervention_id) is None:
        raise HTTPException(404, "Intervention not found")
    return await crud.list_attempts_for_intervention(db, intervention_id)


@router.post(
    "/api/dispatch/check-timeouts",
    response_model=ScanReportRead,
    dependencies=[Depends(require_service_key)],
)
async def check_timeouts(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings=Depends(get_settings_dep),
):
    scanner = TimeoutScanner(
        session_factory,
        orchestrator_factory=lambda db: DispatchOrchestrator(db, config=settings.dispatch),
    )
    report = await scanner.run()
    return report.to_dict()


@router.get("/api/dispatch/manual-queue", response_model=list[InterventionRead])
async def manual_queue(db: AsyncSession = Depends(get_db)):
    return await crud.list_manual_dispatch_queue(db)
