"""Tests for the dispatch orchestrator's offer state machine."""

import asyncio
from datetime import timedelta

import pytest

from fieldops.db import crud
from fieldops.errors import ValidationError
from fieldops.models import dispatch_attempt as attempt_status
from fieldops.models import intervention as intervention_status
from fieldops.models.base import as_utc
from fieldops.services import dispatch as outcomes


async def test_dispatch_offers_first_candidate(orchestrator, technicians, intervention, clock, db):
    result = await orchestrator.dispatch(intervention.id)

    assert result.outcome == outcomes.OFFERED
    assert result.success
    assert result.technician_id == technicians[0].id
    assert result.timeout_at == clock() + timedelta(seconds=120)

    attempt = await crud.get_pending_attempt(db, intervention.id)
    assert attempt.id == result.attempt_id
    assert attempt.attempt_order == 1
    assert (await crud.get_intervention(db, intervention.id)).status == intervention_status.NEW


async def test_dispatch_twice_keeps_single_offer(orchestrator, technicians, intervention, db):
    first = await orchestrator.dispatch(intervention.id)
    second = await orchestrator.dispatch(intervention.id)

    assert second.outcome == outcomes.ALREADY_OFFERED
    assert second.attempt_id == first.attempt_id
    assert await crud.count_attempts(db, intervention.id) == 1


async def test_dispatch_unknown_intervention(orchestrator):
    result = await orchestrator.dispatch("01UNKNOWN")
    assert result.outcome == outcomes.NOT_FOUND
    assert not result.success


async def test_dispatch_without_candidates_flags_manual(orchestrator, intervention, db, events):
    result = await orchestrator.dispatch(intervention.id)

    assert result.outcome == outcomes.MANUAL_DISPATCH_REQUIRED
    assert result.requires_manual_assignment
    fresh = await crud.get_intervention(db, intervention.id)
    assert fresh.requires_manual_dispatch is True
    assert fresh.status == intervention_status.NEW
    assert [e.event for e in events] == ["manual_dispatch_required"]


async def test_timeout_reoffers_to_next_candidate(orchestrator, technicians, intervention, clock, db):
    """Offer expires, attempt is timed out and the next technician gets a fresh deadline."""
    first = await orchestrator.dispatch(intervention.id)
    clock.advance(121)

    result = await orchestrator.check_timeout(intervention.id)

    assert result.outcome == outcomes.OFFERED
    assert result.technician_id == technicians[1].id
    assert result.timeout_at == clock() + timedelta(seconds=120)

    attempts = await crud.list_attempts_for_intervention(db, intervention.id)
    assert [a.status for a in attempts] == [attempt_status.TIMED_OUT, attempt_status.PENDING]
    assert attempts[0].id == first.attempt_id
    assert attempts[1].attempt_order == 2
    assert (await crud.get_intervention(db, intervention.id)).status == intervention_status.NEW


async def test_timeout_with_no_candidate_left_flags_manual(
    orchestrator, technicians, selector, intervention, clock, db,
):
    selector.technician_ids = selector.technician_ids[:1]
    await orchestrator.dispatch(intervention.id)
    clock.advance(121)

    result = await orchestrator.check_timeout(intervention.id)

    assert result.outcome == outcomes.MANUAL_DISPATCH_REQUIRED
    attempts = await crud.list_attempts_for_intervention(db, intervention.id)
    assert [a.status for a in attempts] == [attempt_status.TIMED_OUT]
    fresh = await crud.get_intervention(db, intervention.id)
    assert fresh.requires_manual_dispatch is True
    assert fresh.status == intervention_status.NEW
    assert await crud.list_manual_dispatch_queue(db) != []


async def test_timeout_before_deadline_is_noop(orchestrator, technicians, intervention, clock, db):
    await orchestrator.dispatch(intervention.id)
    clock.advance(60)

    result = await orchestrator.check_timeout(intervention.id)

    assert result.outcome == outcomes.NO_TIMEOUTS
    assert await crud.count_attempts(db, intervention.id) == 1


async def test_timeout_is_not_reprocessed(orchestrator, technicians, intervention, clock, db):
    await orchestrator.dispatch(intervention.id)
    clock.advance(121)

    await orchestrator.check_timeout(intervention.id)
    again = await orchestrator.check_timeout(intervention.id)

    assert again.outcome == outcomes.NO_TIMEOUTS
    assert await crud.count_attempts(db, intervention.id) == 2


async def test_deadline_never_changes(orchestrator, technicians, intervention, clock, db):
    offered = await orchestrator.dispatch(intervention.id)
    attempt = await crud.get_dispatch_attempt(db, offered.attempt_id)
    deadline = as_utc(attempt.timeout_at)

    await orchestrator.decline(intervention.id, technicians[0].id, "too far")
    clock.advance(500)
    await orchestrator.check_timeout(intervention.id)

    attempt = await crud.get_dispatch_attempt(db, offered.attempt_id)
    assert as_utc(attempt.timeout_at) == deadline
    assert attempt.status == attempt_status.DECLINED


async def test_accept_assigns_technician(orchestrator, technicians, intervention, clock, db, events):
    await orchestrator.dispatch(intervention.id)
    clock.advance(30)

    result = await orchestrator.accept(intervention.id, technicians[0].id)

    assert result.outcome == outcomes.ACCEPTED
    fresh = await crud.get_intervention(db, intervention.id)
    assert fresh.status == intervention_status.ASSIGNED
    assert fresh.technician_id == technicians[0].id
    assert fresh.accepted_at is not None
    assert fresh.response_time_seconds is not None
    assert await crud.get_pending_attempt(db, intervention.id) is None
    assert ("intervention", "assigned") in [(e.entity_type, e.event) for e in events]


async def test_accept_by_technician_without_offer_conflicts(orchestrator, technicians, intervention, db):
    await orchestrator.dispatch(intervention.id)

    result = await orchestrator.accept(intervention.id, technicians[1].id)

    assert result.outcome == outcomes.CONFLICT
    assert (await crud.get_intervention(db, intervention.id)).status == intervention_status.NEW


async def test_accept_after_timeout_processed_conflicts(orchestrator, technicians, intervention, clock, db):
    await orchestrator.dispatch(intervention.id)
    clock.advance(121)
    await orchestrator.check_timeout(intervention.id)

    result = await orchestrator.accept(intervention.id, technicians[0].id)

    assert result.outcome == outcomes.CONFLICT
    fresh = await crud.get_intervention(db, intervention.id)
    assert fresh.technician_id is None


async def test_accept_after_deadline_but_before_sweep_wins(orchestrator, technicians, intervention, clock, db):
    await orchestrator.dispatch(intervention.id)
    clock.advance(121)

    accepted = await orchestrator.accept(intervention.id, technicians[0].id)
    swept = await orchestrator.check_timeout(intervention.id)

    assert accepted.outcome == outcomes.ACCEPTED
    assert swept.outcome == outcomes.NO_TIMEOUTS
    attempts = await crud.list_attempts_for_intervention(db, intervention.id)
    assert [a.status for a in attempts] == [attempt_status.ACCEPTED]


async def test_accept_and_sweep_race_has_one_winner(file_session_factory, make_orchestrator, selector, clock):
    async with file_session_factory() as db:
        techs = [await crud.create_technician(db, f"T{i}", f"t{i}@example.com") for i in range(2)]
        intervention = await crud.create_intervention(db, "client-1", "plumbing")
        selector.technician_ids = [t.id for t in techs]
        await make_orchestrator(db).dispatch(intervention.id)
    clock.advance(121)

    async def accept():
        async with file_session_factory() as db:
            return await make_orchestrator(db).accept(intervention.id, techs[0].id)

    async def sweep():
        async with file_session_factory() as db:
            return await make_orchestrator(db).check_timeout(intervention.id)

    accepted, swept = await asyncio.gather(accept(), sweep(), return_exceptions=True)

    async with file_session_factory() as db:
        attempts = await crud.list_attempts_for_intervention(db, intervention.id)
        fresh = await crud.get_intervention(db, intervention.id)

    first = attempts[0]
    if first.status == attempt_status.ACCEPTED:
        assert fresh.technician_id == techs[0].id
        assert len(attempts) == 1
    else:
        assert first.status == attempt_status.TIMED_OUT
        assert fresh.technician_id is None
        assert not getattr(accepted, "success", False)
    assert sum(1 for a in attempts if a.status == attempt_status.PENDING) <= 1


async def test_decline_reoffers_immediately(orchestrator, technicians, intervention, db, events):
    await orchestrator.dispatch(intervention.id)

    result = await orchestrator.decline(intervention.id, technicians[0].id, "busy")

    assert result.outcome == outcomes.OFFERED
    assert result.technician_id == technicians[1].id
    attempts = await crud.list_attempts_for_intervention(db, intervention.id)
    assert attempts[0].status == attempt_status.DECLINED
    assert attempts[0].decline_reason == "busy"
    assert "declined" in [e.event for e in events]


async def test_declined_technician_is_never_reoffered(orchestrator, technicians, intervention, db):
    await orchestrator.dispatch(intervention.id)
    for tech in technicians:
        result = await orchestrator.decline(intervention.id, tech.id)

    assert result.outcome == outcomes.MANUAL_DISPATCH_REQUIRED
    offered = [a.technician_id for a in await crud.list_attempts_for_intervention(db, intervention.id)]
    assert offered == [t.id for t in technicians]


async def test_at_most_one_pending_through_chain(orchestrator, technicians, intervention, clock, db):
    await orchestrator.dispatch(intervention.id)
    await orchestrator.decline(intervention.id, technicians[0].id)
    clock.advance(121)
    await orchestrator.check_timeout(intervention.id)
    await orchestrator.dispatch(intervention.id)

    attempts = await crud.list_attempts_for_intervention(db, intervention.id)
    assert sum(1 for a in attempts if a.status == attempt_status.PENDING) == 1


async def test_concurrent_timeout_checks_create_one_offer(file_session_factory, make_orchestrator, selector, clock):
    async with file_session_factory() as db:
        techs = [await crud.create_technician(db, f"T{i}", f"t{i}@example.com") for i in range(3)]
        intervention = await crud.create_intervention(db, "client-1", "plumbing")
        selector.technician_ids = [t.id for t in techs]
        await make_orchestrator(db).dispatch(intervention.id)
    clock.advance(121)

    async def check():
        async with file_session_factory() as db:
            return await make_orchestrator(db).check_timeout(intervention.id)

    await asyncio.gather(check(), check(), return_exceptions=True)

    async with file_session_factory() as db:
        attempts = await crud.list_attempts_for_intervention(db, intervention.id)
    assert [a.status for a in attempts].count(attempt_status.PENDING) == 1
    assert [a.status for a in attempts].count(attempt_status.TIMED_OUT) == 1


async def test_assign_manually_withdraws_pending_offer(orchestrator, technicians, intervention, db):
    await orchestrator.dispatch(intervention.id)

    result = await orchestrator.assign_manually(intervention.id, technicians[2].id)

    assert result.outcome == outcomes.ASSIGNED
    fresh = await crud.get_intervention(db, intervention.id)
    assert fresh.technician_id == technicians[2].id
    assert fresh.requires_manual_dispatch is False
    attempts = await crud.list_attempts_for_intervention(db, intervention.id)
    assert [a.status for a in attempts] == [attempt_status.CANCELLED]


async def test_assign_manually_unknown_technician(orchestrator, intervention):
    result = await orchestrator.assign_manually(intervention.id, "01NOBODY")
    assert result.outcome == outcomes.NOT_FOUND


async def test_assign_manually_when_already_assigned(orchestrator, technicians, intervention, db):
    intervention_id, first, second = intervention.id, technicians[0].id, technicians[1].id
    await orchestrator.dispatch(intervention_id)
    await orchestrator.accept(intervention_id, first)

    result = await orchestrator.assign_manually(intervention_id, second)

    assert result.outcome == outcomes.CONFLICT
    assert (await crud.get_intervention(db, intervention_id)).technician_id == first


async def test_advance_through_progression(orchestrator, technicians, intervention, db):
    tech_id = technicians[0].id
    await orchestrator.dispatch(intervention.id)
    await orchestrator.accept(intervention.id, tech_id)

    for status in (intervention_status.EN_ROUTE, intervention_status.IN_PROGRESS):
        result = await orchestrator.advance(intervention.id, tech_id, status)
        assert result.outcome == outcomes.STATUS_CHANGED
    await orchestrator.advance(intervention.id, tech_id, intervention_status.COMPLETED, final_price=150)

    fresh = await crud.get_intervention(db, intervention.id)
    assert fresh.status == intervention_status.COMPLETED
    assert fresh.started_at is not None
    assert fresh.completed_at is not None
    assert fresh.is_active is False
    assert float(fresh.final_price) == 150.0


async def test_advance_cannot_skip_steps(orchestrator, technicians, intervention, db):
    # The conflict rolls the session back, expiring every loaded object.
    intervention_id, tech_id = intervention.id, technicians[0].id
    await orchestrator.dispatch(intervention_id)
    await orchestrator.accept(intervention_id, tech_id)

    result = await orchestrator.advance(intervention_id, tech_id, intervention_status.COMPLETED)

    assert result.outcome == outcomes.CONFLICT
    assert (await crud.get_intervention(db, intervention_id)).status == intervention_status.ASSIGNED
    again = await orchestrator.advance(intervention_id, tech_id, intervention_status.EN_ROUTE)
    assert again.outcome == outcomes.STATUS_CHANGED


async def test_advance_by_other_technician(orchestrator, technicians, intervention):
    await orchestrator.dispatch(intervention.id)
    await orchestrator.accept(intervention.id, technicians[0].id)

    result = await orchestrator.advance(intervention.id, technicians[1].id, intervention_status.EN_ROUTE)
    assert result.outcome == outcomes.CONFLICT


async def test_advance_rejects_unknown_target(orchestrator, intervention):
    with pytest.raises(ValidationError):
        await orchestrator.advance(intervention.id, "tech", intervention_status.ASSIGNED)


async def test_release_reoffers_to_someone_else(orchestrator, technicians, intervention, db, events):
    """Assigned technician hands the job back; the next candidate gets the offer."""
    intervention_id, first = intervention.id, technicians[0].id
    await orchestrator.dispatch(intervention_id)
    await orchestrator.accept(intervention_id, first)
    await orchestrator.advance(intervention_id, first, intervention_status.EN_ROUTE)

    result = await orchestrator.release(intervention_id, first, "van broke down")

    assert result.outcome == outcomes.OFFERED
    assert result.technician_id == technicians[1].id
    fresh = await crud.get_intervention(db, intervention_id)
    assert fresh.status == intervention_status.NEW
    assert fresh.technician_id is None
    assert fresh.accepted_at is None
    assert fresh.released_at is not None
    assert fresh.release_reason == "van broke down"
    attempts = await crud.list_attempts_for_intervention(db, intervention_id)
    assert [a.status for a in attempts] == [attempt_status.ACCEPTED, attempt_status.PENDING]
    assert [e.event for e in events][-2:] == ["released", "offered"]


async def test_release_then_accept_by_next_technician(orchestrator, technicians, intervention, db):
    intervention_id = intervention.id
    first, second = technicians[0].id, technicians[1].id
    await orchestrator.dispatch(intervention_id)
    await orchestrator.accept(intervention_id, first)
    await orchestrator.release(intervention_id, first)

    result = await orchestrator.accept(intervention_id, second)

    assert result.outcome == outcomes.ACCEPTED
    assert (await crud.get_intervention(db, intervention_id)).technician_id == second


async def test_release_by_other_technician_conflicts(orchestrator, technicians, intervention, db):
    intervention_id, first = intervention.id, technicians[0].id
    await orchestrator.dispatch(intervention_id)
    await orchestrator.accept(intervention_id, first)

    result = await orchestrator.release(intervention_id, technicians[1].id)

    assert result.outcome == outcomes.CONFLICT
    assert (await crud.get_intervention(db, intervention_id)).technician_id == first


async def test_release_after_work_started_conflicts(orchestrator, technicians, intervention, db):
    intervention_id, tech_id = intervention.id, technicians[0].id
    await orchestrator.dispatch(intervention_id)
    await orchestrator.accept(intervention_id, tech_id)
    await orchestrator.advance(intervention_id, tech_id, intervention_status.EN_ROUTE)
    await orchestrator.advance(intervention_id, tech_id, intervention_status.IN_PROGRESS)

    result = await orchestrator.release(intervention_id, tech_id)

    assert result.outcome == outcomes.CONFLICT
    fresh = await crud.get_intervention(db, intervention_id)
    assert fresh.status == intervention_status.IN_PROGRESS
    assert fresh.technician_id == tech_id


async def test_release_of_manual_assignment_skips_releasing_technician(
    orchestrator, technicians, intervention, selector, db
):
    intervention_id, last = intervention.id, technicians[2].id
    selector.technician_ids = [last]
    await orchestrator.assign_manually(intervention_id, last)

    result = await orchestrator.release(intervention_id, last, "double booked")

    assert result.outcome == outcomes.MANUAL_DISPATCH_REQUIRED
    fresh = await crud.get_intervention(db, intervention_id)
    assert fresh.status == intervention_status.NEW
    assert fresh.requires_manual_dispatch is True
    assert await crud.count_attempts(db, intervention_id) == 0


async def test_release_unknown_intervention(orchestrator):
    result = await orchestrator.release("01UNKNOWN", "tech")
    assert result.outcome == outcomes.NOT_FOUND
