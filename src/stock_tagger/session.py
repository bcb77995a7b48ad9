"""
Command boundary between a front end and the job machinery.

A ``BatchSession`` owns the job store and exposes the commands a front end issues
(submit, remove, edit context, dispatch one, dispatch all, reset, export) together
with the observable state it renders (jobs, batch-running flag, counts).
"""

from __future__ import annotations

from datetime import UTC, datetime
from functools import partial
from typing import TYPE_CHECKING

from loguru import logger

from stock_tagger.export import format_csv, write_csv
from stock_tagger.jobs import JobState, JobStore
from stock_tagger.pool import BoundedWorkerPool, PoolSummary
from stock_tagger.runner import RunOptions, run_job
from stock_tagger.settings import SettingsStore
from stock_tagger.sources import ImageSource


if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from stock_tagger.jobs import Job, JobCounts
    from stock_tagger.runner import Generator
    from stock_tagger.settings import AppSettings


class BatchSession:
    """Job store plus the commands and derived state a front end works with."""

    def __init__(
        self,
        generator: Generator,
        settings_store: SettingsStore | None = None,
        *,
        store: JobStore | None = None,
        timeout: float | None = None,
    ) -> None:
        self.store = store if store is not None else JobStore()
        self._generator = generator
        self._settings_store = settings_store or SettingsStore()
        self._timeout = timeout
        self._batch_running = False

    @property
    def jobs(self) -> list[Job]:
        return self.store.snapshot()

    @property
    def is_batch_running(self) -> bool:
        return self._batch_running

    @property
    def counts(self) -> JobCounts:
        return self.store.counts()

    @property
    def progress_percentage(self) -> int:
        counts = self.store.counts()
        if counts.total == 0:
            return 0
        return round(counts.completed / counts.total * 100)

    def _run_options(self, settings: AppSettings) -> RunOptions:
        return RunOptions(
            exclusions=settings.negative_keywords,
            model_hint=settings.model,
            timeout=self._timeout,
        )

    def submit_images(self, files: Iterable[Path | ImageSource]) -> list[str]:
        sources = [f if isinstance(f, ImageSource) else ImageSource(f) for f in files]
        added = self.store.add(sources)
        logger.info("images_submitted", count=len(added), total=len(self.store))
        return added

    def remove_job(self, job_id: str) -> bool:
        return self.store.remove(job_id)

    def update_context(self, job_id: str, text: str) -> bool:
        updated = self.store.update_context(job_id, text)
        if not updated:
            logger.debug("context_update_ignored", job=job_id)
        return updated

    async def dispatch_single(self, job_id: str) -> Job | None:
        """
        Run one job now (retry an error, regenerate a completed result).

        Allowed while a batch is running. Returns ``None`` without doing anything
        when the job is unknown or already in flight.
        """
        job = self.store.get(job_id)
        if job is None or job.state is JobState.IN_FLIGHT:
            logger.debug("dispatch_single_ignored", job=job_id)
            return None
        options = self._run_options(self._settings_store.load())
        return await run_job(self.store, job_id, self._generator, options)

    async def dispatch_all_eligible(self) -> PoolSummary | None:
        """
        Run every ``pending`` or ``error`` job through the bounded pool.

        Returns ``None`` as a no-op when a batch is already running or nothing is
        eligible.
        """
        if self._batch_running:
            logger.warning("batch_already_running")
            return None
        eligible = self.store.eligible_ids()
        if not eligible:
            logger.info("no_eligible_jobs")
            return None

        settings = self._settings_store.load()
        pool = BoundedWorkerPool(self.store, settings.concurrency_limit)
        worker = partial(
            run_job,
            self.store,
            generator=self._generator,
            options=self._run_options(settings),
        )
        self._batch_running = True
        try:
            return await pool.run(eligible, worker)
        finally:
            self._batch_running = False

    def reset_all(self) -> bool:
        """Remove every job; refused while a batch is running."""
        if self._batch_running:
            logger.warning("reset_refused_batch_running")
            return False
        self.store.clear()
        logger.info("session_reset")
        return True

    def export_completed(self, directory: Path) -> Path | None:
        """Write completed results to a dated CSV file, or return ``None`` if there are none."""
        settings = self._settings_store.load()
        content = format_csv(self.store.snapshot(), settings.artist_name)
        if not content:
            logger.warning("nothing_to_export")
            return None
        return write_csv(content, directory, datetime.now(tz=UTC).date())
