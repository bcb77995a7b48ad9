"""Run a single job end to end: dispatch, generate, filter keywords, record the outcome."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from stock_tagger.jobs import GeneratedMetadata, complete, dispatch, fail


if TYPE_CHECKING:
    from collections.abc import Iterable

    from stock_tagger.jobs import Job, JobStore
    from stock_tagger.sources import ImageSource


class Generator(Protocol):
    async def __call__(
        self,
        source: ImageSource,
        context: str,
        exclusions: str,
        model_hint: str,
    ) -> object: ...


@dataclass(frozen=True)
class RunOptions:
    """
    Per-run inputs taken from the settings at dispatch time.

    ``timeout`` bounds the generator call in seconds; ``None`` waits indefinitely.
    """

    exclusions: str = ""
    model_hint: str = ""
    timeout: float | None = None


def parse_exclusions(text: str) -> set[str]:
    """
    Split a comma-separated exclusion list into trimmed lowercase tokens.

    Examples:
        >>> sorted(parse_exclusions(" Cat, DOG ,, "))
        ['cat', 'dog']

    """
    return {token.strip().lower() for token in text.split(",") if token.strip()}


def filter_keywords(keywords: Iterable[str], exclusions: str) -> list[str]:
    """
    Drop keywords that match an exclusion token, ignoring case.

    Examples:
        >>> filter_keywords(["cat", "Cat", "dog"], "cat")
        ['dog']

    """
    excluded = parse_exclusions(exclusions)
    if not excluded:
        return list(keywords)
    return [keyword for keyword in keywords if keyword.strip().lower() not in excluded]


def _failure_reason(exc: BaseException, timeout: float | None) -> str:
    if isinstance(exc, TimeoutError) and timeout is not None:
        return f"Timed out after {timeout:g}s"
    return str(exc)


async def run_job(
    store: JobStore,
    job_id: str,
    generator: Generator,
    options: RunOptions,
) -> Job | None:
    """
    Drive one job from dispatch to a terminal state.

    Generator failures, malformed payloads and timeouts all end in ``error`` with a
    readable reason; they never propagate. Returns the terminal record, or ``None``
    when the job is unknown or was removed while in flight.

    Raises:
        InvalidTransitionError: the job is already in flight

    """
    job = store.apply(job_id, dispatch)
    if job is None:
        return None

    with logger.contextualize(job=job_id, file=job.name):
        logger.info("job_dispatched")
        try:
            async with asyncio.timeout(options.timeout):
                raw = await generator(
                    job.source,
                    job.context,
                    options.exclusions,
                    options.model_hint,
                )
            metadata = GeneratedMetadata.model_validate(raw, from_attributes=True)
        except Exception as exc:  # noqa: BLE001
            reason = _failure_reason(exc, options.timeout)
            logger.exception("job_failed", error=reason)
            return store.apply(job_id, partial(fail, reason=reason))

        metadata = metadata.model_copy(
            update={"keywords": filter_keywords(metadata.keywords, options.exclusions)},
        )
        terminal = store.apply(job_id, partial(complete, result=metadata))
        if terminal is None:
            logger.info("job_result_discarded_for_removed_job")
        else:
            logger.info("job_completed", keywords=len(metadata.keywords))
        return terminal
