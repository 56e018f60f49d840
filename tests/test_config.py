"""Tests for config loading, env overrides and validation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.common.config import load_config
from src.common.timefmt import format_countdown, format_relative
from tests.conftest import REPO_DIR


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


GOOD = """
capacities:
  api_base: https://api.capacities.io
proxies:
  endpoints:
    - name: corsproxy
      url: "https://corsproxy.io/?"
    - name: thingproxy
      url: https://thingproxy.freeboard.io/fetch/
      mode: path
"""


class TestLoadConfig:
    def test_shipped_config_is_valid(self) -> None:
        cfg = load_config(REPO_DIR / "config" / "config.yaml")
        assert cfg["capacities"]["api_base"] == "https://api.capacities.io/v1"
        assert len(cfg["proxies"]["endpoints"]) >= 2

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_env_overrides(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CAPACITIES_API_BASE", "http://localhost:9999")
        monkeypatch.setenv("CAPACITIES_PROXY_TIMEOUT_MS", "1500")
        monkeypatch.setenv("CAPACITIES_LOG_LEVEL", "DEBUG")
        cfg = load_config(_write(tmp_path, GOOD))
        assert cfg["capacities"]["api_base"] == "http://localhost:9999"
        assert cfg["proxies"]["timeout_ms"] == 1500
        assert cfg["log_level"] == "DEBUG"

    def test_non_numeric_timeout_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CAPACITIES_PROXY_TIMEOUT_MS", "soon")
        with pytest.raises(ValueError, match="CAPACITIES_PROXY_TIMEOUT_MS"):
            load_config(_write(tmp_path, GOOD))

    @pytest.mark.parametrize("text, fragment", [
        ("capacities:\n  api_base: ftp://x\n", "api_base"),
        (GOOD + "  timeout_ms: 0\n", "timeout_ms"),
        (GOOD.replace("api_base: https://api.capacities.io", "api_base: https://a\n  page_size: -1"), "page_size"),
        ("capacities:\n  api_base: https://a\nproxies:\n  endpoints: []\n", "non-empty"),
        ("capacities:\n  api_base: https://a\nproxies:\n  endpoints:\n    - name: x\n      url: u\n      mode: tunnel\n", "mode"),
        ("capacities:\n  api_base: https://a\nproxies:\n  endpoints:\n    - name: x\n", "url"),
    ])
    def test_invalid(self, tmp_path: Path, text: str, fragment: str) -> None:
        with pytest.raises(ValueError, match=fragment):
            load_config(_write(tmp_path, text))

    def test_single_proxy_warns(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        text = "capacities:\n  api_base: https://a\nproxies:\n  endpoints:\n    - name: x\n      url: https://p/?\n"
        with caplog.at_level(logging.WARNING, logger="capacities"):
            load_config(_write(tmp_path, text))
        assert "nothing to fall back to" in caplog.text


class TestTimeFormatting:
    NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("remaining, expected", [
        (timedelta(hours=1), "60:00"),
        (timedelta(minutes=4, seconds=7), "4:07"),
        (timedelta(seconds=-5), "0:00"),
    ])
    def test_countdown(self, remaining: timedelta, expected: str) -> None:
        assert format_countdown(remaining) == expected

    @pytest.mark.parametrize("ago, expected", [
        (timedelta(seconds=20), "Just now"),
        (timedelta(minutes=5), "5m ago"),
        (timedelta(hours=3, minutes=10), "3h ago"),
        (timedelta(hours=30), "yesterday"),
        (timedelta(days=4), "4d ago"),
    ])
    def test_relative(self, ago: timedelta, expected: str) -> None:
        assert format_relative(self.NOW - ago, self.NOW) == expected

    def test_relative_none(self) -> None:
        assert format_relative(None, self.NOW) == "Just now"
