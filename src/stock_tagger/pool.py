"""
Bounded worker pool: run many independent jobs with a ceiling on how many are in flight.

Admission is a semaphore sized to the concurrency limit. The dispatch loop acquires
a slot before starting each job, in input order, and every job gives its slot back
when it reaches a terminal state. The next job therefore starts as soon as any slot
frees, whichever job finished.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from stock_tagger.jobs import ELIGIBLE_STATES, JobState
from stock_tagger.settings import resolve_concurrency


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from stock_tagger.jobs import Job, JobStore

    Worker = Callable[[str], Awaitable[Job | None]]


@dataclass
class PoolSummary:
    """Outcome counts for one pool run."""

    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    discarded: int = 0
    peak_in_flight: int = 0


class BoundedWorkerPool:
    """Drive a sequence of jobs to terminal states, at most ``limit`` at a time."""

    def __init__(self, store: JobStore, limit: int | None = None) -> None:
        self._store = store
        self.limit = resolve_concurrency(limit)
        self._in_flight = 0

    async def run(self, job_ids: Sequence[str], worker: Worker) -> PoolSummary:
        """
        Dispatch ``job_ids`` in order and return once every dispatched job has finished.

        A job that is no longer ``pending`` or ``error`` when its turn comes (removed,
        already in flight, or completed through another path) is skipped. An empty
        input returns immediately.
        """
        summary = PoolSummary()
        if not job_ids:
            logger.debug("pool_run_skipped_no_jobs")
            return summary

        logger.info("pool_run_started", jobs=len(job_ids), limit=self.limit)
        gate = asyncio.Semaphore(self.limit)
        async with asyncio.TaskGroup() as tasks:
            for job_id in job_ids:
                await gate.acquire()
                tasks.create_task(self._drive(job_id, worker, gate, summary))

        logger.info(
            "pool_run_finished",
            dispatched=summary.dispatched,
            completed=summary.completed,
            failed=summary.failed,
            skipped=summary.skipped,
            discarded=summary.discarded,
            peak_in_flight=summary.peak_in_flight,
        )
        return summary

    async def _drive(
        self,
        job_id: str,
        worker: Worker,
        gate: asyncio.Semaphore,
        summary: PoolSummary,
    ) -> None:
        # Eligibility check and the worker's dispatch write run without yielding.
        job = self._store.get(job_id)
        if job is None or job.state not in ELIGIBLE_STATES:
            logger.debug("pool_job_skipped", job=job_id)
            summary.skipped += 1
            gate.release()
            return

        summary.dispatched += 1
        self._in_flight += 1
        summary.peak_in_flight = max(summary.peak_in_flight, self._in_flight)
        try:
            terminal = await worker(job_id)
        finally:
            self._in_flight -= 1
            gate.release()

        if terminal is None:
            summary.discarded += 1
        elif terminal.state is JobState.COMPLETED:
            summary.completed += 1
        else:
            summary.failed += 1
