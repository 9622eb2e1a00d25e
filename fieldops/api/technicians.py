"""Technician registry API."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.db import crud
from fieldops.db.engine import get_db
from fieldops.schemas import TechnicianCreate, TechnicianRead

router = APIRouter(prefix="/api/technicians", tags=["technicians"])


@router.get("", response_model=list[TechnicianRead])
async def list_technicians(active_only: bool = True, db: AsyncSession = Depends(get_db)):
    return await crud.list_technicians(db, active_only=active_only)


@router.post("", status_code=201, response_model=TechnicianRead)
async def create_technician(body: TechnicianCreate, db: AsyncSession = Depends(get_db)):
    fields = body.model_dump(exclude={"name", "email"}, exclude_none=True)
    return await crud.create_technician(db, name=body.name.strip(), email=body.email.strip(), **fields)
