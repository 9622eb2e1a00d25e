"""FastAPI dependency providers for DB sessions, services, and service-key auth."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldops.config import Settings, get_settings
from fieldops.db.engine import async_session_factory, get_db
from fieldops.services.dispatch import DispatchOrchestrator
from fieldops.services.interventions import InterventionService
from fieldops.services.payment_provider import PaymentProvider, get_payment_provider
from fieldops.services.payments import PaymentAuthorizationManager


@lru_cache
def get_settings_dep() -> Settings:
    return get_settings()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for work that needs a fresh session per unit (the timeout sweep)."""
    return async_session_factory


async def require_service_key(
    x_service_key: str = Header(default=""),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    """Guard for system-to-system endpoints. Disabled when no key is configured."""
    if settings.service_api_key and x_service_key != settings.service_api_key:
        raise HTTPException(status_code=401, detail="Invalid service key")


def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings_dep),
) -> DispatchOrchestrator:
    return DispatchOrchestrator(db, config=settings.dispatch)


def get_payment_manager(
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    settings: Settings = Depends(get_settings_dep),
) -> PaymentAuthorizationManager:
    return PaymentAuthorizationManager(db, provider=provider, config=settings.payments)


def get_intervention_service(
    db: AsyncSession = Depends(get_db),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
    payments: PaymentAuthorizationManager = Depends(get_payment_manager),
) -> InterventionService:
    return InterventionService(db, orchestrator=orchestrator, payments=payments)
