"""Dispatch orchestrator: the per-intervention offer state machine.

An intervention is offered to one technician at a time. Each offer is a
``DispatchAttempt`` with a deadline fixed at creation. Accept, decline,
timeout and withdrawal all move the attempt out of ``pending`` through a
compare-and-swap on its status, so two actors racing on the same attempt
resolve to exactly one winner. Expiring an attempt and creating the next
one happen in a single transaction; the partial unique index on pending
attempts rejects any second offer that slips through.

Outcomes that are part of normal operation (intervention missing, offer
already taken, no candidate left) are returned as a ``DispatchResult``
rather than raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.config import DispatchConfig, get_settings
from fieldops.db import crud
from fieldops.errors import ValidationError
from fieldops.models import Intervention
from fieldops.models import dispatch_attempt as attempt_status
from fieldops.models import intervention as intervention_status
from fieldops.models.base import as_utc, utcnow
from fieldops.services.candidate_selector import CandidateSelector, ScoringCandidateSelector
from fieldops.services.change_feed import ChangeFeed, change_feed

logger = logging.getLogger(__name__)

OFFERED = "offered"
ACCEPTED = "accepted"
DECLINED = "declined"
ASSIGNED = "assigned"
WITHDRAWN = "withdrawn"
STATUS_CHANGED = "status_changed"
EXPIRED = "expired"
NO_TIMEOUTS = "no_timeouts"
ALREADY_ASSIGNED = "already_assigned"
ALREADY_OFFERED = "already_offered"
MANUAL_DISPATCH_REQUIRED = "manual_dispatch_required"
NOT_FOUND = "not_found"
CONFLICT = "conflict"

_SUCCESS_OUTCOMES = {OFFERED, ACCEPTED, DECLINED, ASSIGNED, WITHDRAWN, STATUS_CHANGED, EXPIRED, NO_TIMEOUTS}


@dataclass
class DispatchResult:
    intervention_id: str
    outcome: str
    message: str = ""
    technician_id: str | None = None
    attempt_id: str | None = None
    timeout_at: datetime | None = None
    requires_manual_assignment: bool = False

    @property
    def success(self) -> bool:
        return self.outcome in _SUCCESS_OUTCOMES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        if self.timeout_at is not None:
            data["timeout_at"] = self.timeout_at.isoformat()
        return data


# (entity_type, entity_id, event_kind, data), published after commit
_Event = tuple[str, str, str, dict[str, Any]]


class DispatchOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        selector: CandidateSelector | None = None,
        feed: ChangeFeed | None = None,
        config: DispatchConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or get_settings().dispatch
        self.selector = selector or ScoringCandidateSelector(self.config)
        self.feed = feed or change_feed
        self.clock = clock

    # ── Offers ───────────────────────────────────────────

    async def dispatch(self, intervention_id: str) -> DispatchResult:
        """Make the first offer for an unassigned intervention."""
        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            logger.warning("Dispatch requested for unknown intervention %s", intervention_id)
            return DispatchResult(intervention_id, NOT_FOUND, "Intervention not found")

        if intervention.technician_id or intervention.status != intervention_status.NEW:
            return DispatchResult(
                intervention_id, ALREADY_ASSIGNED,
                f"Intervention is {intervention.status}",
                technician_id=intervention.technician_id,
            )

        pending = await crud.get_pending_attempt(self.db, intervention_id)
        if pending is not None:
            return DispatchResult(
                intervention_id, ALREADY_OFFERED, "An offer is already pending",
                technician_id=pending.technician_id, attempt_id=pending.id,
                timeout_at=as_utc(pending.timeout_at),
            )

        events: list[_Event] = []
        try:
            result = await self._offer_next(intervention, self.clock(), events)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Concurrent dispatch for %s already created an offer", intervention_id)
            return DispatchResult(intervention_id, CONFLICT, "Another dispatch created the offer")

        await self._publish(events)
        return result

    async def check_timeout(self, intervention_id: str) -> DispatchResult:
        """Expire elapsed offers for one intervention and move on to the next candidate."""
        now = self.clock()
        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            logger.warning("Timeout check for unknown intervention %s", intervention_id)
            return DispatchResult(intervention_id, NOT_FOUND, "Intervention not found")

        expired = await crud.list_expired_pending_attempts(self.db, now, intervention_id)
        if not expired:
            return DispatchResult(intervention_id, NO_TIMEOUTS, "No timeouts to process")

        events: list[_Event] = []
        try:
            timed_out = []
            for attempt in expired:
                if await crud.transition_attempt(
                    self.db, attempt.id, attempt_status.PENDING, attempt_status.TIMED_OUT, resolved_at=now,
                ):
                    timed_out.append(attempt)
                    events.append(("dispatch_attempt", attempt.id, "timed_out", {
                        "intervention_id": intervention_id,
                        "technician_id": attempt.technician_id,
                    }))

            if not timed_out:
                await self.db.rollback()
                logger.info("Offers for %s were resolved by another actor", intervention_id)
                return DispatchResult(intervention_id, CONFLICT, "Offer already resolved")

            logger.info(
                "Timed out %d offer(s) for intervention %s (technician %s)",
                len(timed_out), intervention_id, timed_out[-1].technician_id,
            )

            if intervention.technician_id or intervention.status != intervention_status.NEW:
                await self.db.commit()
                await self._publish(events)
                return DispatchResult(
                    intervention_id, EXPIRED,
                    f"Offer expired; intervention is {intervention.status}",
                )

            result = await self._offer_next(intervention, now, events)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Concurrent timeout check for %s already re-offered", intervention_id)
            return DispatchResult(intervention_id, CONFLICT, "Another check already re-offered")

        await self._publish(events)
        return result

    async def accept(self, intervention_id: str, technician_id: str) -> DispatchResult:
        """Technician accepts a pending offer. Rejected once the offer is no longer pending."""
        now = self.clock()
        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            return DispatchResult(intervention_id, NOT_FOUND, "Intervention not found")

        attempt = await crud.get_pending_attempt_for_technician(self.db, intervention_id, technician_id)
        if attempt is None:
            return DispatchResult(
                intervention_id, CONFLICT, "Offer is no longer available", technician_id=technician_id,
            )

        if not await crud.transition_attempt(
            self.db, attempt.id, attempt_status.PENDING, attempt_status.ACCEPTED, resolved_at=now,
        ):
            await self.db.rollback()
            logger.info("Accept by %s on %s lost the race", technician_id, intervention_id)
            return DispatchResult(
                intervention_id, CONFLICT, "Offer is no longer available", technician_id=technician_id,
            )

        response_time = int((now - as_utc(intervention.created_at)).total_seconds())
        if not await crud.transition_intervention(
            self.db, intervention_id, intervention_status.NEW,
            status=intervention_status.ASSIGNED,
            technician_id=technician_id,
            accepted_at=now,
            response_time_seconds=response_time,
            requires_manual_dispatch=False,
        ):
            await self.db.rollback()
            logger.info("Intervention %s left 'new' before %s could accept", intervention_id, technician_id)
            return DispatchResult(
                intervention_id, CONFLICT, "Intervention is no longer awaiting a technician",
                technician_id=technician_id,
            )

        await self.db.commit()
        logger.info(
            "Intervention %s accepted by %s (response time %ds)", intervention_id, technician_id, response_time,
        )
        await self._publish([
            ("dispatch_attempt", attempt.id, "accepted", {"intervention_id": intervention_id}),
            ("intervention", intervention_id, "assigned", {"technician_id": technician_id}),
        ])
        return DispatchResult(intervention_id, ACCEPTED, "Assignment accepted",
                              technician_id=technician_id, attempt_id=attempt.id)

    async def decline(self, intervention_id: str, technician_id: str, reason: str = "") -> DispatchResult:
        """Technician declines a pending offer; the next candidate is offered immediately."""
        now = self.clock()
        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            return DispatchResult(intervention_id, NOT_FOUND, "Intervention not found")

        attempt = await crud.get_pending_attempt_for_technician(self.db, intervention_id, technician_id)
        if attempt is None:
            return DispatchResult(
                intervention_id, CONFLICT, "Offer is no longer available", technician_id=technician_id,
            )

        events: list[_Event] = []
        try:
            if not await crud.transition_attempt(
                self.db, attempt.id, attempt_status.PENDING, attempt_status.DECLINED,
                resolved_at=now, decline_reason=reason,
            ):
                await self.db.rollback()
                return DispatchResult(
                    intervention_id, CONFLICT, "Offer is no longer available", technician_id=technician_id,
                )
            events.append(("dispatch_attempt", attempt.id, "declined", {
                "intervention_id": intervention_id, "technician_id": technician_id,
            }))
            logger.info("Technician %s declined %s: %s", technician_id, intervention_id, reason or "-")

            if intervention.status == intervention_status.NEW and not intervention.technician_id:
                result = await self._offer_next(intervention, now, events)
            else:
                result = DispatchResult(intervention_id, DECLINED, "Offer declined")
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return DispatchResult(intervention_id, CONFLICT, "Another actor already re-offered")

        await self._publish(events)
        return result

    async def assign_manually(self, intervention_id: str, technician_id: str) -> DispatchResult:
        """Admin assignment, used once automatic dispatch is exhausted."""
        now = self.clock()
        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            return DispatchResult(intervention_id, NOT_FOUND, "Intervention not found")

        tech = await crud.get_technician(self.db, technician_id)
        if tech is None or not tech.is_active:
            return DispatchResult(intervention_id, NOT_FOUND, "Technician not found",
                                  technician_id=technician_id)

        events = await self._withdraw_pending(intervention_id, now)
        if not await crud.transition_intervention(
            self.db, intervention_id, intervention_status.NEW,
            status=intervention_status.ASSIGNED,
            technician_id=technician_id,
            accepted_at=now,
            requires_manual_dispatch=False,
        ):
            await self.db.rollback()
            return DispatchResult(
                intervention_id, CONFLICT, "Intervention is no longer awaiting a technician",
            )
        await self.db.commit()

        logger.info("Intervention %s manually assigned to %s", intervention_id, technician_id)
        events.append(("intervention", intervention_id, "assigned", {
            "technician_id": technician_id, "manual": True,
        }))
        await self._publish(events)
        return DispatchResult(intervention_id, ASSIGNED, "Technician assigned", technician_id=technician_id)

    async def withdraw(self, intervention_id: str) -> DispatchResult:
        """Cancel any pending offer, e.g. when the client cancels the intervention."""
        events = await self._withdraw_pending(intervention_id, self.clock())
        await self.db.commit()
        await self._publish(events)
        return DispatchResult(intervention_id, WITHDRAWN, f"{len(events)} offer(s) withdrawn")

    # ── Technician progression ───────────────────────────

    async def advance(
        self,
        intervention_id: str,
        technician_id: str,
        status: str,
        final_price: Decimal | None = None,
    ) -> DispatchResult:
        previous = {nxt: cur for cur, nxt in intervention_status.PROGRESSION.items()}.get(status)
        if previous is None:
            raise ValidationError(f"Invalid status transition target: {status}")

        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            return DispatchResult(intervention_id, NOT_FOUND, "Intervention not found")
        current = intervention.status
        if intervention.technician_id != technician_id:
            return DispatchResult(intervention_id, CONFLICT, "Intervention is assigned to another technician",
                                  technician_id=technician_id)

        now = self.clock()
        values: dict[str, Any] = {"status": status}
        if status == intervention_status.IN_PROGRESS:
            values["started_at"] = now
        elif status == intervention_status.COMPLETED:
            values["completed_at"] = now
            values["is_active"] = False
            if final_price is not None:
                values["final_price"] = final_price

        if not await crud.transition_intervention(self.db, intervention_id, previous, **values):
            await self.db.rollback()
            return DispatchResult(
                intervention_id, CONFLICT,
                f"Cannot move from {current} to {status}", technician_id=technician_id,
            )
        await self.db.commit()

        logger.info("Intervention %s: %s -> %s", intervention_id, previous, status)
        await self._publish([("intervention", intervention_id, "status_changed", {
            "from": previous, "to": status, "technician_id": technician_id,
        })])
        return DispatchResult(intervention_id, STATUS_CHANGED, status, technician_id=technician_id)

    async def release(self, intervention_id: str, technician_id: str, reason: str = "") -> DispatchResult:
        """Assigned technician hands the job back before starting it.

        The intervention returns to ``new`` and is offered to the next candidate
        in the same transaction. The releasing technician has an accepted
        attempt, so they are never offered the job again.
        """
        now = self.clock()
        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            return DispatchResult(intervention_id, NOT_FOUND, "Intervention not found")
        current = intervention.status
        if intervention.technician_id != technician_id:
            return DispatchResult(intervention_id, CONFLICT, "Intervention is assigned to another technician",
                                  technician_id=technician_id)

        events: list[_Event] = []
        try:
            if not await crud.unassign_intervention(
                self.db, intervention_id, technician_id, intervention_status.RELEASABLE_STATUSES,
                accepted_at=None,
                response_time_seconds=None,
                released_at=now,
                release_reason=reason,
            ):
                await self.db.rollback()
                return DispatchResult(
                    intervention_id, CONFLICT, f"Cannot release an intervention that is {current}",
                    technician_id=technician_id,
                )
            logger.info("Technician %s released %s: %s", technician_id, intervention_id, reason or "-")
            events.append(("intervention", intervention_id, "released", {
                "technician_id": technician_id, "reason": reason,
            }))
            # A manual assignment leaves no attempt behind, so exclude explicitly.
            result = await self._offer_next(intervention, now, events, exclude=(technician_id,))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return DispatchResult(intervention_id, CONFLICT, "Another actor already re-offered")

        await self._publish(events)
        return result

    # ── Internals ────────────────────────────────────────

    async def _offer_next(
        self, intervention: Intervention, now: datetime, events: list[_Event], exclude: Iterable[str] = (),
    ) -> DispatchResult:
        """Offer to the best technician not yet offered; flag for manual dispatch if none remain.

        Runs inside the caller's transaction.
        """
        excluded = await crud.offered_technician_ids(self.db, intervention.id) | set(exclude)
        candidate = await self.selector.select_next_candidate(self.db, intervention, excluded)

        if candidate is None:
            await crud.set_manual_dispatch_flag(self.db, intervention.id, True)
            logger.warning(
                "No candidate left for intervention %s after %d offer(s); manual dispatch required",
                intervention.id, len(excluded),
            )
            events.append(("intervention", intervention.id, "manual_dispatch_required", {
                "offered_count": len(excluded),
            }))
            return DispatchResult(
                intervention.id, MANUAL_DISPATCH_REQUIRED, "No more technicians available",
                requires_manual_assignment=True,
            )

        order = await crud.count_attempts(self.db, intervention.id) + 1
        timeout_at = now + timedelta(seconds=self.config.offer_window_seconds)
        attempt = await crud.create_dispatch_attempt(
            self.db, intervention.id, candidate.technician_id, timeout_at,
            attempt_order=order, score=candidate.score,
        )
        if intervention.requires_manual_dispatch:
            await crud.set_manual_dispatch_flag(self.db, intervention.id, False)

        logger.info(
            "Offered intervention %s to %s (attempt #%d, expires %s)",
            intervention.id, candidate.technician_id, order, timeout_at.isoformat(),
        )
        events.append(("dispatch_attempt", attempt.id, "offered", {
            "intervention_id": intervention.id,
            "technician_id": candidate.technician_id,
            "timeout_at": timeout_at.isoformat(),
        }))
        return DispatchResult(
            intervention.id, OFFERED, "Offered to next technician",
            technician_id=candidate.technician_id, attempt_id=attempt.id, timeout_at=timeout_at,
        )

    async def _withdraw_pending(self, intervention_id: str, now: datetime) -> list[_Event]:
        events: list[_Event] = []
        pending = await crud.get_pending_attempt(self.db, intervention_id)
        while pending is not None:
            if await crud.transition_attempt(
                self.db, pending.id, attempt_status.PENDING, attempt_status.CANCELLED, resolved_at=now,
            ):
                events.append(("dispatch_attempt", pending.id, "cancelled", {
                    "intervention_id": intervention_id,
                }))
            pending = await crud.get_pending_attempt(self.db, intervention_id)
        return events

    async def _publish(self, events: list[_Event]) -> None:
        for entity_type, entity_id, kind, data in events:
            await self.feed.publish(entity_type, entity_id, kind, data)
