"""Intervention lifecycle: creation and client cancellation."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.db import crud
from fieldops.errors import ConcurrencyConflict, NotFoundError, ValidationError
from fieldops.models import Intervention
from fieldops.models import intervention as intervention_status
from fieldops.models.base import utcnow
from fieldops.schemas.intervention import InterventionCreate
from fieldops.services.change_feed import ChangeFeed, change_feed
from fieldops.services.dispatch import DispatchOrchestrator, DispatchResult
from fieldops.services.payments import CancelResult, PaymentAuthorizationManager

logger = logging.getLogger(__name__)


class InterventionService:
    def __init__(
        self,
        db: AsyncSession,
        orchestrator: DispatchOrchestrator | None = None,
        payments: PaymentAuthorizationManager | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.feed = feed or change_feed
        self.clock = clock
        self.orchestrator = orchestrator or DispatchOrchestrator(db, feed=self.feed, clock=clock)
        self._payments = payments

    @property
    def payments(self) -> PaymentAuthorizationManager:
        # Built lazily: creation and dispatch never need the payment provider.
        if self._payments is None:
            self._payments = PaymentAuthorizationManager(self.db, feed=self.feed, clock=self.clock)
        return self._payments

    async def create(self, data: InterventionCreate) -> tuple[Intervention, DispatchResult | None]:
        fields = data.model_dump(exclude={"client_id", "category", "auto_dispatch"})
        intervention = await crud.create_intervention(self.db, data.client_id, data.category, **fields)
        logger.info("Intervention %s created (%s, %s)", intervention.id, intervention.category, intervention.priority)
        await self.feed.publish("intervention", intervention.id, "created", {
            "category": intervention.category, "priority": intervention.priority,
        })

        dispatch = None
        if data.auto_dispatch:
            dispatch = await self.orchestrator.dispatch(intervention.id)
            intervention = await crud.get_intervention(self.db, intervention.id)
        return intervention, dispatch

    async def cancel(self, intervention_id: str, reason: str = "") -> tuple[Intervention, CancelResult]:
        """Client cancellation: close the intervention, withdraw offers, release the payment hold.

        Cancelling an already-cancelled intervention repeats the cleanup, so a
        retry after a failed release still frees the hold.
        """
        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            raise NotFoundError(f"Intervention not found: {intervention_id}")
        if intervention.status == intervention_status.CANCELLED:
            payment = await self._release_holds(intervention_id)
            return await crud.get_intervention(self.db, intervention_id), payment
        if intervention.status not in intervention_status.CANCELLABLE_STATUSES:
            raise ValidationError(f"Cannot cancel an intervention that is {intervention.status}")

        if not await crud.transition_intervention(
            self.db, intervention_id, intervention.status,
            status=intervention_status.CANCELLED,
            technician_id=None,
            is_active=False,
            requires_manual_dispatch=False,
            cancelled_at=self.clock(),
            cancellation_reason=reason,
        ):
            await self.db.rollback()
            current = await crud.get_intervention(self.db, intervention_id)
            if current is not None and current.status == intervention_status.CANCELLED:
                payment = await self._release_holds(intervention_id)
                return await crud.get_intervention(self.db, intervention_id), payment
            raise ConcurrencyConflict("Intervention changed while cancelling; retry")
        await self.db.commit()
        logger.info("Intervention %s cancelled by client: %s", intervention_id, reason or "-")

        payment = await self._release_holds(intervention_id)

        await self.feed.publish("intervention", intervention_id, "cancelled", {"reason": reason})
        return await crud.get_intervention(self.db, intervention_id), payment

    async def _release_holds(self, intervention_id: str) -> CancelResult:
        await self.orchestrator.withdraw(intervention_id)
        return await self.payments.cancel(intervention_id)
