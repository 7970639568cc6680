"""Shared fixtures and builders. No network and no real credential files."""

from __future__ import annotations

import json
import os
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from antiproxy.config import Settings

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Real Settings without reading a .env file."""
    defaults: dict[str, Any] = {
        "oauth_client_id": "test-client",
        "oauth_client_secret": "test-secret",
        "cascade_poll_interval": 0.0,
        "cascade_timeout": 5.0,
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


def mock_response(
    status_code: int = 200,
    json_data: Any = None,
    text: str | None = None,
) -> MagicMock:
    """Create a mock httpx.Response with common attributes."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_data if json_data is not None else {}
    if text is None:
        text = json.dumps(json_data) if json_data is not None else ""
    resp.text = text
    return resp


def mock_http_client(*responses: Any) -> AsyncMock:
    """AsyncClient whose .post() returns (or raises) the given items in order."""
    client = AsyncMock(spec=httpx.AsyncClient)
    client.post.side_effect = list(responses)
    return client


def cloud_chunk(
    parts: list[dict[str, Any]],
    finish_reason: str | None = None,
    usage: dict[str, int] | None = None,
    wrapped: bool = True,
) -> dict[str, Any]:
    """Build one generateContent chunk."""
    candidate: dict[str, Any] = {"content": {"role": "model", "parts": parts}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    payload: dict[str, Any] = {"candidates": [candidate]}
    if usage:
        payload["usageMetadata"] = usage
    return {"response": payload} if wrapped else payload


def parse_sse(raw_events: list[str]) -> list[tuple[str, dict[str, Any]]]:
    """Split encoded SSE strings back into (event, data) pairs."""
    parsed = []
    for raw in raw_events:
        lines = raw.strip().split("\n")
        name = lines[0].removeprefix("event: ")
        data = json.loads(lines[1].removeprefix("data: "))
        parsed.append((name, data))
    return parsed


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer ANTI_* variables out of Settings."""
    for key in list(os.environ):
        if key.startswith("ANTI_"):
            monkeypatch.delenv(key, raising=False)
