"""Data access for interventions, dispatch attempts and payment authorizations.

Every status change goes through a ``transition_*`` helper: a conditional
UPDATE keyed on the row id and its expected current status. The helpers
return whether the row was changed and never commit; the caller owns the
transaction so a transition and the writes that depend on it land together.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.models import Technician, Intervention, DispatchAttempt, PaymentAuthorization
from fieldops.models import dispatch_attempt as attempt_status
from fieldops.models import intervention as intervention_status


def _expected(statuses: str | Iterable[str]) -> tuple[str, ...]:
    return (statuses,) if isinstance(statuses, str) else tuple(statuses)


# ── Technician ───────────────────────────────────────────

async def create_technician(db: AsyncSession, name: str, email: str, **kwargs) -> Technician:
    tech = Technician(name=name, email=email, **kwargs)
    db.add(tech)
    await db.commit()
    await db.refresh(tech)
    return tech


async def get_technician(db: AsyncSession, tech_id: str) -> Technician | None:
    return await db.get(Technician, tech_id)


async def list_technicians(db: AsyncSession, active_only: bool = True) -> list[Technician]:
    q = select(Technician)
    if active_only:
        q = q.where(Technician.is_active == True)
    result = await db.execute(q.order_by(Technician.created_at))
    return list(result.scalars().all())


async def count_active_assignments(db: AsyncSession, technician_ids: list[str]) -> dict[str, int]:
    """Number of in-flight interventions per technician."""
    if not technician_ids:
        return {}
    result = await db.execute(
        select(Intervention.technician_id, func.count(Intervention.id))
        .where(
            Intervention.technician_id.in_(technician_ids),
            Intervention.status.in_((
                intervention_status.ASSIGNED,
                intervention_status.EN_ROUTE,
                intervention_status.IN_PROGRESS,
            )),
        )
        .group_by(Intervention.technician_id)
    )
    return {tech_id: count for tech_id, count in result.all()}


# ── Intervention ─────────────────────────────────────────

async def create_intervention(db: AsyncSession, client_id: str, category: str, **kwargs) -> Intervention:
    intervention = Intervention(client_id=client_id, category=category, **kwargs)
    db.add(intervention)
    await db.commit()
    await db.refresh(intervention)
    return intervention


async def get_intervention(db: AsyncSession, intervention_id: str) -> Intervention | None:
    """Fresh read; never served from a stale identity map."""
    return await db.get(Intervention, intervention_id, populate_existing=True)


async def transition_intervention(
    db: AsyncSession, intervention_id: str, expected: str | Iterable[str], **values
) -> bool:
    result = await db.execute(
        update(Intervention)
        .where(Intervention.id == intervention_id, Intervention.status.in_(_expected(expected)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def unassign_intervention(
    db: AsyncSession, intervention_id: str, technician_id: str, expected: str | Iterable[str], **values
) -> bool:
    """Move back to ``new`` only while still held by ``technician_id``."""
    result = await db.execute(
        update(Intervention)
        .where(
            Intervention.id == intervention_id,
            Intervention.technician_id == technician_id,
            Intervention.status.in_(_expected(expected)),
        )
        .values(status=intervention_status.NEW, technician_id=None, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_manual_dispatch_flag(db: AsyncSession, intervention_id: str, flag: bool) -> None:
    await db.execute(
        update(Intervention)
        .where(Intervention.id == intervention_id)
        .values(requires_manual_dispatch=flag)
        .execution_options(synchronize_session=False)
    )


async def list_manual_dispatch_queue(db: AsyncSession) -> list[Intervention]:
    result = await db.execute(
        select(Intervention)
        .where(
            Intervention.requires_manual_dispatch == True,
            Intervention.status == intervention_status.NEW,
        )
        .order_by(Intervention.created_at)
    )
    return list(result.scalars().all())


# ── DispatchAttempt ──────────────────────────────────────

async def create_dispatch_attempt(
    db: AsyncSession,
    intervention_id: str,
    technician_id: str,
    timeout_at: datetime,
    attempt_order: int = 1,
    score: float | None = None,
) -> DispatchAttempt:
    """Insert a pending attempt. Flushes so the one-pending index is checked now."""
    attempt = DispatchAttempt(
        intervention_id=intervention_id,
        technician_id=technician_id,
        status=attempt_status.PENDING,
        timeout_at=timeout_at,
        attempt_order=attempt_order,
        score=score,
    )
    db.add(attempt)
    await db.flush()
    return attempt


async def get_dispatch_attempt(db: AsyncSession, attempt_id: str) -> DispatchAttempt | None:
    return await db.get(DispatchAttempt, attempt_id, populate_existing=True)


async def get_pending_attempt(db: AsyncSession, intervention_id: str) -> DispatchAttempt | None:
    result = await db.execute(
        select(DispatchAttempt)
        .where(
            DispatchAttempt.intervention_id == intervention_id,
            DispatchAttempt.status == attempt_status.PENDING,
        )
        .order_by(DispatchAttempt.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_pending_attempt_for_technician(
    db: AsyncSession, intervention_id: str, technician_id: str
) -> DispatchAttempt | None:
    result = await db.execute(
        select(DispatchAttempt)
        .where(
            DispatchAttempt.intervention_id == intervention_id,
            DispatchAttempt.technician_id == technician_id,
            DispatchAttempt.status == attempt_status.PENDING,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def list_expired_pending_attempts(
    db: AsyncSession, now: datetime, intervention_id: str | None = None
) -> list[DispatchAttempt]:
    q = select(DispatchAttempt).where(
        DispatchAttempt.status == attempt_status.PENDING,
        DispatchAttempt.timeout_at < now,
    )
    if intervention_id is not None:
        q = q.where(DispatchAttempt.intervention_id == intervention_id)
    result = await db.execute(
        q.order_by(DispatchAttempt.timeout_at).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_attempts_for_intervention(db: AsyncSession, intervention_id: str) -> list[DispatchAttempt]:
    result = await db.execute(
        select(DispatchAttempt)
        .where(DispatchAttempt.intervention_id == intervention_id)
        .order_by(DispatchAttempt.attempt_order, DispatchAttempt.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def offered_technician_ids(db: AsyncSession, intervention_id: str) -> set[str]:
    """Every technician this intervention has ever been offered to."""
    result = await db.execute(
        select(DispatchAttempt.technician_id)
        .where(DispatchAttempt.intervention_id == intervention_id)
    )
    return set(result.scalars().all())


async def count_attempts(db: AsyncSession, intervention_id: str) -> int:
    result = await db.execute(
        select(func.count(DispatchAttempt.id))
        .where(DispatchAttempt.intervention_id == intervention_id)
    )
    return result.scalar_one()


async def transition_attempt(
    db: AsyncSession, attempt_id: str, expected: str | Iterable[str], new_status: str, **values
) -> bool:
    result = await db.execute(
        update(DispatchAttempt)
        .where(DispatchAttempt.id == attempt_id, DispatchAttempt.status.in_(_expected(expected)))
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ── PaymentAuthorization ─────────────────────────────────

async def create_payment_authorization(
    db: AsyncSession,
    intervention_id: str,
    amount,
    currency: str,
    customer_email: str = "",
) -> PaymentAuthorization:
    auth = PaymentAuthorization(
        intervention_id=intervention_id,
        amount=amount,
        currency=currency,
        customer_email=customer_email,
        details={},
    )
    db.add(auth)
    await db.flush()
    return auth


async def get_payment_authorization(db: AsyncSession, auth_id: str) -> PaymentAuthorization | None:
    return await db.get(PaymentAuthorization, auth_id, populate_existing=True)


async def get_latest_payment_authorization(
    db: AsyncSession, intervention_id: str, statuses: Iterable[str] | None = None
) -> PaymentAuthorization | None:
    q = select(PaymentAuthorization).where(PaymentAuthorization.intervention_id == intervention_id)
    if statuses is not None:
        q = q.where(PaymentAuthorization.status.in_(tuple(statuses)))
    result = await db.execute(
        q.order_by(PaymentAuthorization.created_at.desc(), PaymentAuthorization.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def list_payment_authorizations(db: AsyncSession, intervention_id: str) -> list[PaymentAuthorization]:
    result = await db.execute(
        select(PaymentAuthorization)
        .where(PaymentAuthorization.intervention_id == intervention_id)
        .order_by(PaymentAuthorization.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def transition_payment_authorization(
    db: AsyncSession, auth_id: str, expected: str | Iterable[str], new_status: str, **values
) -> bool:
    result = await db.execute(
        update(PaymentAuthorization)
        .where(PaymentAuthorization.id == auth_id, PaymentAuthorization.status.in_(_expected(expected)))
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
