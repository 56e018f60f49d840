"""Load and validate Capacities Analytics configuration from config.yaml."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("capacities")

_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.yaml"

PROXY_MODES = frozenset({"path", "query", "direct"})


def load_config(config_path: Path | str | None = None) -> dict[str, Any]:
    """Load configuration from YAML file, with env-var overrides.

    Environment variable overrides (if set):
        CAPACITIES_API_BASE          -> capacities.api_base
        CAPACITIES_PROXY_TIMEOUT_MS  -> proxies.timeout_ms
        CAPACITIES_LOG_DIR           -> log_dir
        CAPACITIES_LOG_LEVEL         -> log_level

    The API token is deliberately absent: it is supplied by the user at
    runtime and never read from configuration.
    """
    path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as fh:
        cfg: dict[str, Any] = yaml.safe_load(fh) or {}

    _env_override(cfg, "CAPACITIES_API_BASE", "capacities", "api_base")
    _env_override(cfg, "CAPACITIES_PROXY_TIMEOUT_MS", "proxies", "timeout_ms", cast=int)
    _env_override(cfg, "CAPACITIES_LOG_DIR", "log_dir")
    _env_override(cfg, "CAPACITIES_LOG_LEVEL", "log_level")

    _validate(cfg)
    return cfg


def _env_override(cfg: dict, env_key: str, *keys: str, cast: Any = str) -> None:
    """Override a nested config value from an environment variable."""
    val = os.environ.get(env_key)
    if val is None:
        return
    target = cfg
    for k in keys[:-1]:
        target = target.setdefault(k, {})
    try:
        target[keys[-1]] = cast(val)
    except ValueError:
        raise ValueError(f"{env_key} has an invalid value: {val!r}") from None


def _positive_int(value: Any, name: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")


def _validate(cfg: dict[str, Any]) -> None:
    """Validate the API base URL, paging limits and the proxy list."""
    api = cfg.get("capacities") or {}
    base = str(api.get("api_base", ""))
    if not base.startswith(("http://", "https://")):
        raise ValueError(f"capacities.api_base must be an http(s) URL, got {base!r}")

    _positive_int(api.get("page_size", 100), "capacities.page_size")
    _positive_int(api.get("max_pages", 50), "capacities.max_pages")

    proxies = cfg.get("proxies") or {}
    _positive_int(proxies.get("timeout_ms", 8000), "proxies.timeout_ms")

    endpoints = proxies.get("endpoints")
    if not isinstance(endpoints, list) or not endpoints:
        raise ValueError("proxies.endpoints must be a non-empty list")
    for i, entry in enumerate(endpoints):
        if not isinstance(entry, dict):
            raise ValueError(f"proxies.endpoints[{i}] must be a mapping")
        mode = entry.get("mode", "query")
        if mode not in PROXY_MODES:
            raise ValueError(f"proxies.endpoints[{i}] has unknown mode {mode!r}")
        if mode != "direct" and not entry.get("url"):
            raise ValueError(f"proxies.endpoints[{i}] is missing a url")

    if len(endpoints) == 1 and endpoints[0].get("mode", "query") != "direct":
        logger.warning("Only one CORS proxy configured; there is nothing to fall back to")


def setup_logging(cfg: dict[str, Any]) -> None:
    """Configure root logging: stderr + rotating file."""
    log_dir = Path(cfg.get("log_dir", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    from logging.handlers import RotatingFileHandler

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    root = logging.getLogger("capacities")
    root.setLevel(getattr(logging, cfg.get("log_level", "INFO")))

    # stderr
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(sh)

    # rotating file
    fh = RotatingFileHandler(log_dir / "capacities.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)
