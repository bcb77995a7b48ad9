"""
Stock-agency CSV export of completed jobs.

Quoting rule: a field is wrapped in double quotes, with inner quotes doubled, if and
only if it contains a comma, a double quote or a newline. Everything else is
written as is.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

from loguru import logger

from stock_tagger.jobs import CompletedJob
from stock_tagger.settings import DEFAULT_ARTIST


if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from stock_tagger.jobs import Job

SEPARATOR = ","
QUOTE = '"'
KEYWORD_SEPARATOR = ","
LOCALE = "en"
HEADER = ("filename", "title", "keywords", "Artist", "locale", "description")


def escape_field(text: str) -> str:
    """
    Quote a field only when it contains the separator, a quote or a newline.

    Examples:
        >>> escape_field("sunrise, mountain view")
        '"sunrise, mountain view"'
        >>> escape_field('5" print')
        '"5"" print"'
        >>> escape_field("plain")
        'plain'

    """
    if not text:
        return ""
    if SEPARATOR in text or QUOTE in text or "\n" in text:
        return QUOTE + text.replace(QUOTE, QUOTE * 2) + QUOTE
    return text


def _row(job: CompletedJob, attribution: str) -> str:
    result = job.result
    fields = (
        job.name,
        result.title,
        KEYWORD_SEPARATOR.join(result.keywords),
        attribution or DEFAULT_ARTIST,
        LOCALE,
        result.description,
    )
    return SEPARATOR.join(escape_field(field) for field in fields)


def format_csv(jobs: Iterable[Job], attribution: str) -> str:
    """
    Render completed jobs as CSV text, in the order given.

    Returns an empty string when no job is completed, so callers can tell
    "nothing to export" apart from a header-only document.
    """
    rows = [
        _row(job, attribution)
        for job in jobs
        if isinstance(job, CompletedJob) and job.result is not None
    ]
    if not rows:
        return ""
    return "\n".join([SEPARATOR.join(HEADER), *rows])


def export_filename(day: date) -> str:
    """
    Examples:
        >>> export_filename(date(2024, 5, 17))
        'stock_metadata_2024-05-17.csv'

    """
    return f"stock_metadata_{day.isoformat()}.csv"


def write_csv(content: str, directory: Path, day: date) -> Path:
    """Write CSV text as UTF-8 with a byte-order mark so spreadsheets keep non-ASCII text."""
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / export_filename(day)
    target.write_text(content, encoding="utf-8-sig", newline="")
    logger.info("csv_written", target=str(target), size=len(content))
    return target
