"""
Job records for a batch of images and the rules for moving them between states.

Every job is one of four frozen variants, one per state. Only ``CompletedJob``
carries a result and only ``FailedJob`` carries a failure reason, so a record can
never hold both. The store replaces whole records keyed by id; asynchronous
runners hold an id, never a record.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, ClassVar, NamedTuple
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel, Field


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from stock_tagger.sources import ImageSource

FALLBACK_FAILURE_REASON = "Failed"


class JobState(StrEnum):
    """Job lifecycle states."""

    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    COMPLETED = "completed"
    ERROR = "error"


# States a full-batch run picks up and that accept context edits.
ELIGIBLE_STATES = frozenset({JobState.PENDING, JobState.ERROR})


class InvalidTransitionError(ValueError):
    """Raised when a transition is requested from a state that does not allow it."""


class GeneratedMetadata(BaseModel):
    """Schema for structured generation results."""

    title: str
    description: str
    keywords: list[str] = Field(default_factory=list)


@dataclass(frozen=True, kw_only=True)
class _JobBase:
    id: str
    source: ImageSource
    context: str = ""

    state: ClassVar[JobState]

    @property
    def name(self) -> str:
        return self.source.name


@dataclass(frozen=True, kw_only=True)
class PendingJob(_JobBase):
    state: ClassVar[JobState] = JobState.PENDING


@dataclass(frozen=True, kw_only=True)
class InFlightJob(_JobBase):
    state: ClassVar[JobState] = JobState.IN_FLIGHT


@dataclass(frozen=True, kw_only=True)
class CompletedJob(_JobBase):
    result: GeneratedMetadata

    state: ClassVar[JobState] = JobState.COMPLETED


@dataclass(frozen=True, kw_only=True)
class FailedJob(_JobBase):
    failure_reason: str

    state: ClassVar[JobState] = JobState.ERROR


Job = PendingJob | InFlightJob | CompletedJob | FailedJob


class JobCounts(NamedTuple):
    """Derived counts for progress display."""

    pending: int
    completed: int
    total: int


def dispatch(job: Job) -> InFlightJob:
    """
    Move a job into ``in-flight``.

    Allowed from ``pending``, ``error`` (retry) and ``completed`` (regenerate).
    Any previous result or failure reason is dropped.
    """
    if isinstance(job, InFlightJob):
        msg = f"Job {job.id} is already in flight"
        raise InvalidTransitionError(msg)
    return InFlightJob(id=job.id, source=job.source, context=job.context)


def complete(job: Job, result: GeneratedMetadata) -> CompletedJob:
    if not isinstance(job, InFlightJob):
        msg = f"Job {job.id} cannot complete from state {job.state}"
        raise InvalidTransitionError(msg)
    return CompletedJob(id=job.id, source=job.source, context=job.context, result=result)


def fail(job: Job, reason: str | None) -> FailedJob:
    if not isinstance(job, InFlightJob):
        msg = f"Job {job.id} cannot fail from state {job.state}"
        raise InvalidTransitionError(msg)
    return FailedJob(
        id=job.id,
        source=job.source,
        context=job.context,
        failure_reason=reason or FALLBACK_FAILURE_REASON,
    )


def generate_job_id() -> str:
    """Return a 12-character hex id (UUID4 truncated)."""
    return uuid4().hex[:12]


class JobStore:
    """
    Authoritative in-memory state of every submitted image job.

    Records are kept in submission order. All mutations are synchronous, so on a
    single event loop no task can observe a half-updated record.
    """

    def __init__(self, id_factory: Callable[[], str] = generate_job_id) -> None:
        self._jobs: dict[str, Job] = {}
        self._listeners: list[Callable[[str, Job | None], None]] = []
        self._id_factory = id_factory

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def subscribe(self, listener: Callable[[str, Job | None], None]) -> Callable[[], None]:
        """
        Register a callback invoked after every mutation.

        The callback receives the job id and the new record, or ``None`` when the
        job was removed. Returns a function that unregisters the callback.
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self, job_id: str, job: Job | None) -> None:
        for listener in list(self._listeners):
            listener(job_id, job)

    def add(self, sources: Iterable[ImageSource]) -> list[str]:
        """Create one ``pending`` job per source, in order, and return their ids."""
        added: list[str] = []
        for source in sources:
            job_id = self._id_factory()
            while job_id in self._jobs:
                job_id = self._id_factory()
            job = PendingJob(id=job_id, source=source)
            self._jobs[job_id] = job
            added.append(job_id)
            logger.debug("job_added", job=job_id, file=source.name)
            self._notify(job_id, job)
        return added

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def snapshot(self) -> list[Job]:
        return list(self._jobs.values())

    def eligible_ids(self) -> list[str]:
        """Ids of jobs a full-batch run would pick up (``pending`` or ``error``)."""
        return [
            job.id
            for job in self._jobs.values()
            if job.state in ELIGIBLE_STATES
        ]

    def apply(self, job_id: str, transition: Callable[[Job], Job]) -> Job | None:
        """
        Replace a job with the result of ``transition`` applied to it.

        Returns the new record, or ``None`` if the id is no longer in the store;
        writes against removed jobs are discarded.
        """
        current = self._jobs.get(job_id)
        if current is None:
            logger.debug("transition_discarded_for_removed_job", job=job_id)
            return None
        updated = transition(current)
        self._jobs[job_id] = updated
        logger.debug(
            "job_state_changed",
            job=job_id,
            previous=current.state.value,
            current=updated.state.value,
        )
        self._notify(job_id, updated)
        return updated

    def update_context(self, job_id: str, text: str) -> bool:
        """Set the free-text hint; a no-op unless the job is ``pending`` or ``error``."""
        current = self._jobs.get(job_id)
        if current is None or current.state not in ELIGIBLE_STATES:
            return False
        self.apply(job_id, lambda job: replace(job, context=text))
        return True

    def remove(self, job_id: str) -> bool:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        job.source.release()
        logger.debug("job_removed", job=job_id, state=job.state.value)
        self._notify(job_id, None)
        return True

    def clear(self) -> None:
        for job_id in list(self._jobs):
            self.remove(job_id)

    def counts(self) -> JobCounts:
        pending = completed = 0
        for job in self._jobs.values():
            if job.state in ELIGIBLE_STATES:
                pending += 1
            elif job.state is JobState.COMPLETED:
                completed += 1
        return JobCounts(pending=pending, completed=completed, total=len(self._jobs))
