"""Persisted user preferences, stored as a small JSON key-value file."""

import os
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError


DEFAULT_CONCURRENCY = 5
DEFAULT_ARTIST = "quoctrung"
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "gemini-2.5-flash")
DEFAULT_SETTINGS_PATH = Path(
    os.getenv(
        "STOCK_TAGGER_SETTINGS",
        str(Path.home() / ".config" / "stock-tagger" / "settings.json"),
    ),
)


def resolve_concurrency(value: object) -> int:
    """
    Return a usable concurrency limit; anything missing or below 1 becomes the default.

    Examples:
        >>> resolve_concurrency(3), resolve_concurrency(0), resolve_concurrency(None)
        (3, 5, 5)

    """
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return DEFAULT_CONCURRENCY
    return value


class AppSettings(BaseModel):
    """User preferences read at dispatch time."""

    model_config = ConfigDict(populate_by_name=True)

    negative_keywords: str = Field(default="", alias="negativeKeywords")
    artist_name: str = Field(default=DEFAULT_ARTIST, alias="artistName")
    model: str = DEFAULT_MODEL_NAME
    max_concurrency: int = Field(default=DEFAULT_CONCURRENCY, alias="maxConcurrency")

    @property
    def concurrency_limit(self) -> int:
        return resolve_concurrency(self.max_concurrency)


class SettingsStore:
    """
    Load and save ``AppSettings`` at a fixed path.

    ``overrides`` are applied on every load without being written back, which is
    how command-line flags take precedence over the saved preferences.
    """

    def __init__(
        self,
        path: Path = DEFAULT_SETTINGS_PATH,
        overrides: dict[str, object] | None = None,
    ) -> None:
        self.path = path
        self.overrides = {
            key: value for key, value in (overrides or {}).items() if value is not None
        }

    def load(self) -> AppSettings:
        """Return saved settings, or defaults when the file is missing or unreadable."""
        settings = self._read()
        if self.overrides:
            return AppSettings.model_validate({**settings.model_dump(), **self.overrides})
        return settings

    def _read(self) -> AppSettings:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return AppSettings()
        except OSError as exc:
            logger.warning("settings_read_failed", file=str(self.path), error=str(exc))
            return AppSettings()

        try:
            return AppSettings.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("settings_invalid_using_defaults", file=str(self.path), error=str(exc))
            return AppSettings()

    def save(self, settings: AppSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            settings.model_dump_json(by_alias=True, indent=2),
            encoding="utf-8",
        )
        logger.info("settings_saved", file=str(self.path))

    def update(self, **changes: object) -> AppSettings:
        """Apply field changes (unset values skipped) and persist the result."""
        current = self._read()
        merged = current.model_dump()
        merged.update({key: value for key, value in changes.items() if value is not None})
        updated = AppSettings.model_validate(merged)
        self.save(updated)
        return updated
