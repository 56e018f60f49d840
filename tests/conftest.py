"""Shared fixtures: a scripted HTTP layer, test config, and the dashboard app."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio

from src.capacities.client import CapacitiesClient
from src.capacities.proxy_fetcher import ProxyFetcher, endpoints_from_config
from src.common.config import load_config

REPO_DIR = Path(__file__).resolve().parent.parent

VALID_TOKEN = "cap_abc123def456ghi789jkl"
T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


def make_response(status: int = 200, body: Any = "", headers: dict[str, str] | None = None) -> MagicMock:
    """Build a mock ``requests.Response``; non-string bodies are JSON-encoded."""
    resp = MagicMock()
    resp.status_code = status
    resp.text = body if isinstance(body, str) else json.dumps(body)
    resp.headers = headers or {"Content-Type": "application/json"}
    return resp


class FakeHTTP:
    """Stand-in for ``requests.Session``; ``handler(url, headers)`` returns a response or an exception."""

    def __init__(self, handler: Callable[[str, dict[str, str]], Any]) -> None:
        self.handler = handler
        self.calls: list[str] = []
        self.headers_seen: list[dict[str, str]] = []

    def get(self, url: str, headers: dict[str, str] | None = None, timeout: float | None = None) -> Any:
        self.calls.append(url)
        self.headers_seen.append(dict(headers or {}))
        result = self.handler(url, headers or {})
        if isinstance(result, BaseException):
            raise result
        return result


class FakeCapacitiesAPI(FakeHTTP):
    """Minimal in-memory Capacities API served over the ``direct`` proxy mode."""

    def __init__(self) -> None:
        super().__init__(self._route)
        self.space: Any = {"spaces": [{"id": "space-1", "title": "Second Brain"}]}
        self.objects: list[dict[str, Any]] = []
        self.notes: list[dict[str, Any]] = []
        self.override: Any = None

    def _route(self, url: str, headers: dict[str, str]) -> Any:
        if self.override is not None:
            return self.override
        parts = urlsplit(url)
        if parts.path.endswith("/spaces"):
            return make_response(200, self.space)
        if parts.path.endswith("/objects"):
            return make_response(200, {"objects": self.objects})
        if parts.path.endswith("/notes"):
            query = parse_qs(parts.query)
            page = int(query.get("page", ["1"])[0])
            size = int(query.get("pageSize", ["100"])[0])
            chunk = self.notes[(page - 1) * size: page * size]
            has_more = page * size < len(self.notes)
            return make_response(200, {"notes": chunk, "hasMore": has_more})
        return make_response(404, "<html><body>Not found</body></html>")


def note(
    note_id: str,
    *,
    created: datetime | None = None,
    updated: datetime | None = None,
    links: list[str] | None = None,
    tags: list[str] | None = None,
    words: int = 0,
    kind: str = "RootPage",
) -> dict[str, Any]:
    """Build one API note item."""
    created = created or T0 - timedelta(days=60)
    return {
        "id": note_id,
        "title": f"Note {note_id}",
        "createdAt": created.isoformat(),
        "updatedAt": (updated or created).isoformat(),
        "wordCount": words,
        "links": links or [],
        "tags": tags or [],
        "type": kind,
    }


CONFIG_TEMPLATE = """
capacities:
  api_base: https://api.capacities.test
  endpoints:
    space: /spaces
    objects: /objects
    notes: /notes
  page_size: 2
  max_pages: 3
proxies:
  timeout_ms: 500
  endpoints:
    - name: direct
      mode: direct
log_dir: {log_dir}
log_level: DEBUG
"""


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_TEMPLATE.format(log_dir=tmp_path / "logs"), encoding="utf-8")
    return path


@pytest.fixture()
def cfg(config_file: Path) -> dict[str, Any]:
    return load_config(config_file)


@pytest.fixture()
def fake_api() -> FakeCapacitiesAPI:
    return FakeCapacitiesAPI()


@pytest.fixture()
def api_client(cfg: dict[str, Any], fake_api: FakeCapacitiesAPI) -> CapacitiesClient:
    fetcher = ProxyFetcher(endpoints_from_config(cfg), http=fake_api)
    return CapacitiesClient(cfg, fetcher=fetcher, clock=lambda: T0)


@pytest_asyncio.fixture()
async def client(config_file: Path, api_client: CapacitiesClient):
    """Async httpx client bound to the dashboard app with a scripted API behind it."""
    from src.dashboard import app as dashboard

    dashboard._state.clear()
    dashboard._state.token_expired = False
    dashboard._client_cache["default"] = api_client

    with patch("src.dashboard.app.CONFIG_PATH", config_file):
        transport = httpx.ASGITransport(app=dashboard.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c

    dashboard._state.clear()
    dashboard._client_cache.clear()
