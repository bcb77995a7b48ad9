"""Tests for job records, transition rules and the in-memory job store."""

from collections.abc import Callable

import pytest

from stock_tagger.jobs import (
    FALLBACK_FAILURE_REASON,
    CompletedJob,
    FailedJob,
    GeneratedMetadata,
    InFlightJob,
    InvalidTransitionError,
    JobState,
    JobStore,
    PendingJob,
    complete,
    dispatch,
    fail,
)
from stock_tagger.sources import ImageSource


METADATA = GeneratedMetadata(title="Sunrise", description="Sun over hills.", keywords=["sun"])


def test_add_creates_pending_jobs_in_submission_order(
    store: JobStore,
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    """Each source becomes one pending job with a unique id, kept in order."""
    ids = store.add(make_sources("a.jpg", "b.jpg", "c.jpg"))

    assert len(set(ids)) == 3
    assert [job.name for job in store.snapshot()] == ["a.jpg", "b.jpg", "c.jpg"]
    assert all(isinstance(job, PendingJob) for job in store.snapshot())
    assert store.eligible_ids() == ids


def test_add_regenerates_colliding_ids(make_sources: Callable[..., list[ImageSource]]) -> None:
    """A repeated id from the factory is replaced so ids stay unique."""
    generated = iter(["same", "same", "other"])
    store = JobStore(id_factory=lambda: next(generated))

    ids = store.add(make_sources("a.jpg", "b.jpg"))

    assert ids == ["same", "other"]


def test_transitions_follow_the_state_machine(
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    """pending -> in-flight -> completed, and error/completed can be re-dispatched."""
    (source,) = make_sources("a.jpg")
    pending = PendingJob(id="j1", source=source, context="beach")

    in_flight = dispatch(pending)
    assert in_flight.state is JobState.IN_FLIGHT
    assert in_flight.context == "beach"

    done = complete(in_flight, METADATA)
    assert isinstance(done, CompletedJob)
    assert done.result == METADATA

    again = dispatch(done)
    assert isinstance(again, InFlightJob)
    assert not hasattr(again, "result")

    failed = fail(again, "quota exceeded")
    assert isinstance(failed, FailedJob)
    assert failed.failure_reason == "quota exceeded"
    assert not hasattr(failed, "result")

    retried = dispatch(failed)
    assert isinstance(retried, InFlightJob)
    assert not hasattr(retried, "failure_reason")


def test_invalid_transitions_raise(make_sources: Callable[..., list[ImageSource]]) -> None:
    """Only in-flight jobs can finish, and in-flight jobs cannot be dispatched again."""
    (source,) = make_sources("a.jpg")
    pending = PendingJob(id="j1", source=source)

    with pytest.raises(InvalidTransitionError):
        complete(pending, METADATA)
    with pytest.raises(InvalidTransitionError):
        fail(pending, "boom")
    with pytest.raises(InvalidTransitionError):
        dispatch(dispatch(pending))


def test_fail_without_message_uses_generic_reason(
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    (source,) = make_sources("a.jpg")
    failed = fail(InFlightJob(id="j1", source=source), "")
    assert failed.failure_reason == FALLBACK_FAILURE_REASON


def test_apply_on_removed_job_is_discarded(
    store: JobStore,
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    """Writes against an id that is gone return None and leave the store untouched."""
    (job_id,) = store.add(make_sources("a.jpg"))
    store.apply(job_id, dispatch)
    store.remove(job_id)

    assert store.apply(job_id, lambda job: complete(job, METADATA)) is None
    assert len(store) == 0


def test_update_context_only_in_pending_or_error(
    store: JobStore,
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    """Context edits are ignored while a run is in flight and resume after an error."""
    (job_id,) = store.add(make_sources("a.jpg"))

    assert store.update_context(job_id, "mountain")
    assert store.get(job_id).context == "mountain"

    store.apply(job_id, dispatch)
    assert not store.update_context(job_id, "ignored")
    assert store.get(job_id).context == "mountain"

    store.apply(job_id, lambda job: fail(job, "timeout"))
    assert store.update_context(job_id, "mountain lake")
    assert store.get(job_id).context == "mountain lake"

    store.apply(job_id, dispatch)
    store.apply(job_id, lambda job: complete(job, METADATA))
    assert not store.update_context(job_id, "too late")
    assert not store.update_context("missing", "nothing")


def test_remove_and_clear_release_cached_payloads(
    store: JobStore,
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    """Removing jobs drops each source's prepared image."""
    released: list[str] = []
    sources = make_sources("a.jpg", "b.jpg", "c.jpg")
    for source in sources:
        source.release = lambda name=source.name: released.append(name)  # type: ignore[method-assign]
    ids = store.add(sources)

    assert store.remove(ids[0])
    assert not store.remove(ids[0])
    store.clear()

    assert released == ["a.jpg", "b.jpg", "c.jpg"]
    assert len(store) == 0


def test_counts_treat_errors_as_pending(
    store: JobStore,
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    """Errors count toward pending because a full-batch run picks them up again."""
    a, b, c, d = store.add(make_sources("a.jpg", "b.jpg", "c.jpg", "d.jpg"))
    store.apply(a, dispatch)
    store.apply(a, lambda job: complete(job, METADATA))
    store.apply(b, dispatch)
    store.apply(b, lambda job: fail(job, "x"))
    store.apply(c, dispatch)

    counts = store.counts()

    assert (counts.pending, counts.completed, counts.total) == (2, 1, 4)
    assert store.eligible_ids() == [b, d]


def test_subscribe_reports_changes_until_unsubscribed(
    store: JobStore,
    make_sources: Callable[..., list[ImageSource]],
) -> None:
    seen: list[tuple[str, str | None]] = []
    unsubscribe = store.subscribe(
        lambda job_id, job: seen.append((job_id, job.state.value if job else None)),
    )
    (job_id,) = store.add(make_sources("a.jpg"))
    store.apply(job_id, dispatch)
    unsubscribe()
    store.remove(job_id)

    assert seen == [(job_id, "pending"), (job_id, "in-flight")]
