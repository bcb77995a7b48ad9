"""Tests for the LM Studio model validation helper."""

import json
from http import HTTPStatus
from typing import Any

import httpx
import pytest

import stock_tagger.generator as g


class _DummyResponse:
    """Minimal httpx-style response stub for validation tests."""

    def __init__(self, status_code: int, payload: Any) -> None:  # noqa: ANN401
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:  # noqa: ANN401
        return self._payload

    @property
    def text(self) -> str:
        return json.dumps(self._payload)


def _patch_httpx_get(
    monkeypatch: pytest.MonkeyPatch,
    response: _DummyResponse | Exception,
) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    def fake_get(url: str, *, headers: dict[str, str], timeout: float) -> _DummyResponse:
        calls.append({"url": url, "headers": headers, "timeout": timeout})
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(g.httpx, "get", fake_get)
    return calls


def test_validate_lmstudio_model_passes_when_list_contains_id(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The helper returns quietly when the requested model identifier is present."""
    calls = _patch_httpx_get(
        monkeypatch,
        _DummyResponse(HTTPStatus.OK, {"data": [{"id": "vision-pro"}]}),
    )

    g.validate_lmstudio_model("http://localhost:1234/v1", "vision-pro", "secret")

    recorded = calls[0]
    assert recorded["url"] == "http://localhost:1234/v1/models"
    assert recorded["timeout"] == pytest.approx(5.0)
    assert recorded["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.parametrize(
    "response",
    [
        _DummyResponse(HTTPStatus.OK, {"data": [{"id": "other-model"}]}),
        _DummyResponse(HTTPStatus.SERVICE_UNAVAILABLE, {"error": "loading"}),
        httpx.ConnectError("connection refused"),
    ],
    ids=["model-missing", "bad-status", "unreachable"],
)
def test_validate_lmstudio_model_exits_on_problems(
    monkeypatch: pytest.MonkeyPatch,
    response: _DummyResponse | Exception,
) -> None:
    """SystemExit is raised when the model cannot be confirmed."""
    _patch_httpx_get(monkeypatch, response)

    with pytest.raises(SystemExit):
        g.validate_lmstudio_model("http://localhost:1234/v1", "vision-pro", None)


def test_validate_lmstudio_model_rejects_non_http_url(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch_httpx_get(monkeypatch, _DummyResponse(HTTPStatus.OK, {"data": []}))

    with pytest.raises(SystemExit):
        g.validate_lmstudio_model("ftp://localhost/v1", "vision-pro", None)

    assert calls == []
