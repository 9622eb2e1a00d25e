"""Timeout scanner: periodic sweep for dispatch offers whose deadline elapsed.

The scanner itself never writes. It finds interventions with an expired
pending offer and hands each one, once, to the orchestrator's
``check_timeout`` in its own session. One failing intervention is logged
and reported; the rest of the batch still runs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldops.db import crud
from fieldops.models.base import utcnow
from fieldops.services.dispatch import DispatchOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class InterventionScanResult:
    intervention_id: str
    ok: bool
    result: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class ScanReport:
    processed: int = 0
    results: list[InterventionScanResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, "results": [asdict(r) for r in self.results]}


class TimeoutScanner:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator_factory: Callable[[AsyncSession], DispatchOrchestrator] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.orchestrator_factory = orchestrator_factory or (
            lambda db: DispatchOrchestrator(db, clock=self.clock)
        )

    async def find_timed_out_interventions(self) -> list[str]:
        """Distinct intervention ids with at least one expired pending offer."""
        async with self.session_factory() as db:
            attempts = await crud.list_expired_pending_attempts(db, self.clock())
        # dict keeps first-seen order
        return list(dict.fromkeys(a.intervention_id for a in attempts))

    async def run(self) -> ScanReport:
        logger.info("[Timeout Check] Running at %s", self.clock().isoformat())
        intervention_ids = await self.find_timed_out_interventions()
        report = ScanReport()
        if not intervention_ids:
            logger.info("[Timeout Check] No timed out attempts found")
            return report

        logger.info("[Timeout Check] Found %d intervention(s) with timed out offers", len(intervention_ids))
        for intervention_id in intervention_ids:
            try:
                async with self.session_factory() as db:
                    result = await self.orchestrator_factory(db).check_timeout(intervention_id)
            except Exception as exc:
                logger.exception("[Timeout Check] Failed to process intervention %s", intervention_id)
                report.results.append(InterventionScanResult(intervention_id, ok=False, error=str(exc)))
                continue
            logger.info("[Timeout Check] Processed intervention %s: %s", intervention_id, result.outcome)
            report.results.append(InterventionScanResult(intervention_id, ok=True, result=result.to_dict()))

        report.processed = len(intervention_ids)
        return report


async def run_periodically(scanner: TimeoutScanner, interval_seconds: float):
    """Background task: run the scanner on a fixed cadence until cancelled."""
    while True:
        try:
            await scanner.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[Timeout Check] Sweep failed")
        await asyncio.sleep(interval_seconds)
