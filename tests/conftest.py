"""Shared fixtures: real image sources on temporary paths and a scriptable generator stub."""

import asyncio
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Keep LiteLLM from fetching its remote model cost map in a background thread at import.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from stock_tagger.jobs import Job, JobStore
from stock_tagger.settings import AppSettings, SettingsStore
from stock_tagger.sources import ImageSource


class StubGenerator:
    """Generator double with per-file delays, failures and payloads."""

    def __init__(
        self,
        *,
        delays: dict[str, float] | None = None,
        failures: dict[str, Exception] | None = None,
        payloads: dict[str, Any] | None = None,
    ) -> None:
        self.delays = delays or {}
        self.failures = failures or {}
        self.payloads = payloads or {}
        self.calls: list[dict[str, str]] = []
        self.active = 0
        self.peak = 0

    async def __call__(
        self,
        source: ImageSource,
        context: str,
        exclusions: str,
        model_hint: str,
    ) -> Any:  # noqa: ANN401
        self.calls.append(
            {
                "file": source.name,
                "context": context,
                "exclusions": exclusions,
                "model": model_hint,
            },
        )
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delays.get(source.name, 0))
            if source.name in self.failures:
                raise self.failures[source.name]
            return self.payloads.get(
                source.name,
                {
                    "title": f"Title for {source.name}",
                    "description": f"Description for {source.name}",
                    "keywords": ["stock", "photo"],
                },
            )
        finally:
            self.active -= 1

    @property
    def files(self) -> list[str]:
        return [call["file"] for call in self.calls]


class EventLog:
    """Store listener that records every (state, file) change and the in-flight high-water mark."""

    def __init__(self, store: JobStore) -> None:
        self._store = store
        self.events: list[tuple[str, str]] = []
        self.peak_in_flight = 0

    def __call__(self, job_id: str, job: Job | None) -> None:
        if job is None:
            self.events.append(("removed", job_id))
            return
        self.events.append((job.state.value, job.name))
        in_flight = sum(1 for j in self._store.snapshot() if j.state.value == "in-flight")
        self.peak_in_flight = max(self.peak_in_flight, in_flight)

    def of(self, state: str) -> list[str]:
        return [name for recorded, name in self.events if recorded == state]


@pytest.fixture
def make_sources(tmp_path: Path) -> Callable[..., list[ImageSource]]:
    """Build sources for the given file names; files are not read unless a payload is needed."""

    def factory(*names: str) -> list[ImageSource]:
        return [ImageSource(tmp_path / name) for name in names]

    return factory


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def event_log(store: JobStore) -> EventLog:
    log = EventLog(store)
    store.subscribe(log)
    return log


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    store = SettingsStore(tmp_path / "settings.json")
    store.save(AppSettings(max_concurrency=2, negative_keywords="cat", model="test-model"))
    return store


@pytest.fixture
def stub_generator_cls() -> type[StubGenerator]:
    return StubGenerator
