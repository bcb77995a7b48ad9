#!/usr/bin/env python3
"""
Stock Tagger: CLI app to generate stock-photo titles, descriptions and keywords using AI.

Images are sent to a vision-language model a few at a time (bounded concurrency),
failed images can be retried individually, and completed results are exported as
a stock-agency CSV file.

Requirements:
 - A Gemini API key (GEMINI_API_KEY), or an Ollama / LM Studio server running a
   vision-language model.

"""
# ruff: noqa: PLR0913

import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from stock_tagger.generator import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_RETRIES,
    DEFAULT_TEMPERATURE,
    MetadataGenerator,
    MissingCredentialError,
    ProviderName,
    create_agent,
)
from stock_tagger.jobs import Job, JobState
from stock_tagger.session import BatchSession
from stock_tagger.settings import DEFAULT_SETTINGS_PATH, AppSettings, SettingsStore
from stock_tagger.sources import (
    DEFAULT_DIMENSIONS,
    DEFAULT_EXTENSIONS,
    DEFAULT_JPEG_QUALITY,
    ImageSource,
    parse_extensions,
    resolve_image_files,
)


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="stock-tagger",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-stock_tagger.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _resolve_sources(
    inputs: list[Path] | None,
    image_extensions: str,
    *,
    recursive: bool,
    jpeg_quality: int,
    jpeg_dimensions: int,
) -> list[ImageSource]:
    ext_set = parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)

    if not inputs:
        logger.error(
            "no_inputs_provided",
            hint="Pass one or more --input/-i paths (files or directories)",
        )
        raise SystemExit(1)

    image_files = resolve_image_files(inputs, ext_set, recursive=recursive)
    if not image_files:
        logger.error(
            "no_image_files_found",
            inputs=[str(p) for p in inputs],
            recursive=recursive,
            extensions=sorted(ext_set),
        )
        raise SystemExit(1)

    logger.info("image_files_discovered", count=len(image_files))
    return [
        ImageSource(path, jpeg_quality=jpeg_quality, max_size=jpeg_dimensions)
        for path in image_files
    ]


def _progress_listener(session: BatchSession):  # noqa: ANN202
    """Log a progress line each time a job reaches a terminal state."""

    def on_change(job_id: str, job: Job | None) -> None:
        if job is None or job.state not in (JobState.COMPLETED, JobState.ERROR):
            return
        counts = session.counts
        logger.info(
            "job_progress",
            job=job_id,
            file=job.name,
            state=job.state.value,
            completed=f"{counts.completed}/{counts.total}",
            percent=session.progress_percentage,
        )

    return on_change


async def _run_batch(
    session: BatchSession,
    *,
    retry_failed: bool,
) -> list[Job]:
    """Run every eligible job, then re-dispatch failures once, one at a time."""
    await session.dispatch_all_eligible()

    failed_ids = [job.id for job in session.jobs if job.state is JobState.ERROR]
    if failed_ids and retry_failed:
        logger.info("retrying_failed_files", count=len(failed_ids))
        for idx, job_id in enumerate(failed_ids, start=1):
            with logger.contextualize(retry=True, index=f"{idx}/{len(failed_ids)}"):
                await session.dispatch_single(job_id)

    return [job for job in session.jobs if job.state is JobState.ERROR]


@app.default
def tag(
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True),
            help="One or more paths: files and/or directories (repeat this option)",
        ),
    ] = None,
    *,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated image file extensions to process (case insensitive)",
        ),
    ] = DEFAULT_EXTENSIONS,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            help="Process files in subdirectories recursively",
        ),
    ] = False,
    context: Annotated[
        str,
        Parameter(
            name=("--context", "-c"),
            help="Main keywords or subject hint applied to every image",
        ),
    ] = "",
    output_dir: Annotated[
        Path,
        Parameter(
            name=("--output", "-o"),
            help="Folder where the CSV export is written",
        ),
    ] = Path(),
    model_name: Annotated[
        str | None,
        Parameter(
            name=("--model", "-m"),
            help="Vision-language model name (defaults to the saved setting)",
        ),
    ] = None,
    provider_name: Annotated[
        ProviderName,
        Parameter(
            name=("--provider",),
            help="Backend provider: 'google', 'ollama' or 'lmstudio'",
        ),
    ] = "google",
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL (ollama/lmstudio)"),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None,
    max_concurrency: Annotated[
        int | None,
        Parameter(
            name=("--concurrency", "-j"),
            help="Maximum images processed at once (defaults to the saved setting)",
        ),
    ] = None,
    negative_keywords: Annotated[
        str | None,
        Parameter(
            name=("--negative-keywords", "-x"),
            help="Comma-separated keywords to strip from results (defaults to the saved setting)",
        ),
    ] = None,
    artist_name: Annotated[
        str | None,
        Parameter(
            name=("--artist",),
            help="Artist column value in the CSV (defaults to the saved setting)",
        ),
    ] = None,
    timeout: Annotated[
        float | None,
        Parameter(
            name=("--timeout",),
            validator=validators.Number(gt=0),
            help="Fail an image if the model does not answer within this many seconds",
        ),
    ] = None,
    retry_failed: Annotated[
        bool,
        Parameter(
            name=("--retry-failed",),
            negative="--no-retry-failed",
            help="Re-dispatch failed images once after the batch finishes",
        ),
    ] = True,
    temperature: Annotated[
        float,
        Parameter(
            name=("--temperature",),
            help="Sampling temperature (0.0-1.0)",
        ),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(
            name=("--max-tokens",),
            help="Maximum tokens to generate",
        ),
    ] = DEFAULT_MAX_TOKENS,
    jpeg_dimensions: Annotated[
        int,
        Parameter(
            name=("--jpeg-dimensions",),
            help="Max dimension in pixels for the resized JPEG sent to the model",
        ),
    ] = DEFAULT_DIMENSIONS,
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            help="JPEG quality (1-100) for the image sent to the model",
        ),
    ] = DEFAULT_JPEG_QUALITY,
    retries: Annotated[
        int,
        Parameter(
            name=("--retries",),
            help="Number of automatic output-validation retries per request",
        ),
    ] = DEFAULT_RETRIES,
    settings_file: Annotated[
        Path,
        Parameter(
            name=("--settings-file",),
            help="JSON file holding saved preferences",
        ),
    ] = DEFAULT_SETTINGS_PATH,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Generate stock metadata for images with AI and export the results as CSV.

    Inputs:
    - One or more --input/-i paths (files and/or directories; repeatable).
    - Files are processed as is. Directories use --ext (add --recursive for subfolders).

    Behavior:
    - Loads each image (RAW supported), converts it to an in-memory JPEG, queries the model.
    - At most --concurrency images are in flight at once; the rest wait their turn.
    - Keywords matching the negative keyword list are removed (case insensitive).
    - Failed images are retried once, individually (disable with --no-retry-failed).
    - Completed images are written to stock_metadata_<date>.csv in --output.

    Exit status: returns 1 if no inputs, no images found, or any image fails.

    Examples:
        stock-tagger -i ./photos
        stock-tagger -i ./photos --ext jpg,cr3 -r -j 3 -x "text,logo"
        stock-tagger -i ./IMG_0001.jpg --provider ollama -m qwen2.5vl:7b

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    settings_store = SettingsStore(
        settings_file,
        overrides={
            "model": model_name,
            "max_concurrency": max_concurrency,
            "negative_keywords": negative_keywords,
            "artist_name": artist_name,
        },
    )
    settings = settings_store.load()
    logger.info(
        "starting_stock_tagger",
        inputs=[str(p) for p in (inputs or [])],
        extensions=image_extensions,
        provider=provider_name,
        model=settings.model,
        concurrency=settings.concurrency_limit,
        negative_keywords=settings.negative_keywords,
        api_key_present=bool(api_key),
        timeout=timeout,
        retry_failed=retry_failed,
    )

    sources = _resolve_sources(
        inputs,
        image_extensions,
        recursive=recursive,
        jpeg_quality=jpeg_quality,
        jpeg_dimensions=jpeg_dimensions,
    )

    generator = MetadataGenerator(
        lambda name: create_agent(
            name,
            provider_name=provider_name,
            api_base_url=api_base_url,
            api_key=api_key,
            retries=retries,
        ),
        temperature=temperature,
        max_tokens=max_tokens,
    )
    try:
        generator.agent_for(settings.model)
    except MissingCredentialError as exc:
        logger.error("provider_credentials_missing", provider=provider_name, error=str(exc))
        raise SystemExit(1) from exc

    session = BatchSession(generator, settings_store, timeout=timeout)
    session.store.subscribe(_progress_listener(session))
    job_ids = session.submit_images(sources)
    if context:
        for job_id in job_ids:
            session.update_context(job_id, context)

    failed = asyncio.run(_run_batch(session, retry_failed=retry_failed))

    counts = session.counts
    logger.info(
        "processing_summary",
        total_files=counts.total,
        successful=counts.completed,
        failed=len(failed),
    )
    if failed:
        logger.error(
            "files_failed",
            files={job.name: job.failure_reason for job in failed if job.state is JobState.ERROR},
        )

    exported = session.export_completed(output_dir)
    if exported is None:
        logger.warning("no_completed_images_to_export")
    else:
        logger.info("export_written", target=str(exported), rows=counts.completed)

    if failed:
        raise SystemExit(1)


@app.command(name="settings")
def settings_command(
    *,
    negative_keywords: Annotated[
        str | None,
        Parameter(name=("--negative-keywords",), help="Comma-separated keywords to exclude"),
    ] = None,
    artist_name: Annotated[
        str | None,
        Parameter(name=("--artist",), help="Artist column value in the CSV export"),
    ] = None,
    model_name: Annotated[
        str | None,
        Parameter(name=("--model",), help="Default vision-language model"),
    ] = None,
    max_concurrency: Annotated[
        int | None,
        Parameter(
            name=("--concurrency",),
            validator=validators.Number(gte=1),
            help="Maximum images processed at once",
        ),
    ] = None,
    settings_file: Annotated[
        Path,
        Parameter(name=("--settings-file",), help="JSON file holding saved preferences"),
    ] = DEFAULT_SETTINGS_PATH,
) -> None:
    """
    Show saved preferences, or update them when any option is given.

    Examples:
        stock-tagger settings
        stock-tagger settings --concurrency 3 --negative-keywords "text,logo"

    """
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    store = SettingsStore(settings_file)
    changes = {
        "negative_keywords": negative_keywords,
        "artist_name": artist_name,
        "model": model_name,
        "max_concurrency": max_concurrency,
    }
    current: AppSettings
    if any(value is not None for value in changes.values()):
        current = store.update(**changes)
    else:
        current = store.load()
    print(current.model_dump_json(by_alias=True, indent=2))  # noqa: T201


if __name__ == "__main__":
    app()
