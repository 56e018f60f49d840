#!/usr/bin/env python3
"""Capacities Analytics -- FastAPI backend for the knowledge-base dashboard.

Holds the single active token session, runs syncs against the Capacities
API through the CORS-relay client, and serves the latest statistics to the
front end.

Run with:
    python3 -m uvicorn src.dashboard.app:app --host 127.0.0.1 --port 8765
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Allow running from repo root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from src.analyzers.knowledge_stats import CapacitiesStats
from src.capacities.client import CapacitiesClient, SyncResult
from src.capacities.errors import ClassifiedError, ErrorKind, TokenFormatError
from src.capacities.session import ExpiryWatcher, TokenSession
from src.common.config import load_config
from src.common.timefmt import format_countdown, format_relative

logger = logging.getLogger("capacities.dashboard")

app = FastAPI(title="Capacities Analytics", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

REPO_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_PATH = REPO_DIR / "config" / "config.yaml"

_client_cache: dict[str, CapacitiesClient] = {}


def _cfg() -> dict[str, Any]:
    return load_config(CONFIG_PATH)


def _get_client() -> CapacitiesClient:
    client = _client_cache.get("default")
    if client is None:
        client = CapacitiesClient(_cfg())
        _client_cache["default"] = client
    return client


def _now() -> datetime:
    return _get_client().clock()


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


# ══════════════════════════════════════════════════════════════════════════════
#  Session state (one active session, in memory only)
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class DashboardState:
    session: TokenSession | None = None
    watcher: ExpiryWatcher | None = None
    stats: CapacitiesStats | None = None
    space: dict[str, Any] | None = None
    last_sync: datetime | None = None
    last_error: ClassifiedError | None = None
    retry_count: int = 0
    token_expired: bool = False

    def clear(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
        self.session = None
        self.watcher = None
        self.stats = None
        self.space = None
        self.last_sync = None
        self.last_error = None
        self.retry_count = 0


_state = DashboardState()


def _activate(session: TokenSession) -> None:
    """Replace whatever session was active; its derived state is dropped."""
    _state.clear()
    _state.token_expired = False
    _state.session = session
    _state.watcher = ExpiryWatcher(session, _on_token_expired, clock=_get_client().clock)
    _state.watcher.start()
    logger.info("Session %s active until %s", session.masked(), session.expires_at.isoformat())


def _end_session(reason: str, expired: bool) -> None:
    if _state.session is not None:
        _state.session.invalidate(reason)
    _state.clear()
    _state.token_expired = expired


def _on_token_expired(session: TokenSession) -> None:
    if _state.session is not session:
        return
    logger.info("Token expired: %s", session.invalidated_reason or "deadline passed")
    _end_session("token expired", expired=True)


async def _run_sync(session: TokenSession) -> SyncResult:
    """Run one sync in a worker thread and apply it if ``session`` is still active.

    Overlapping syncs are not queued; whichever finishes last wins.
    """
    result = await asyncio.to_thread(_get_client().sync, session)
    if _state.session is not session:
        logger.debug("Discarding sync result for a replaced session")
        return result

    if result.ok:
        _state.stats = result.stats
        _state.space = result.space
        _state.last_sync = result.synced_at
        _state.last_error = None
        _state.retry_count = 0
    else:
        _state.last_error = result.error
        if result.error is not None and result.error.requires_reauth:
            error = result.error
            _end_session(error.message, expired=True)
            _state.last_error = error
    return result


def _error_response(error: ClassifiedError, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": error.to_dict()}, status_code=status_code)


def _status_for(error: ClassifiedError | None) -> int:
    if error is None:
        return 400
    if error.requires_reauth:
        return 401
    return 502


# ══════════════════════════════════════════════════════════════════════════════
#  Token lifecycle
# ══════════════════════════════════════════════════════════════════════════════

@app.post("/api/token")
async def api_token_submit(request: Request) -> JSONResponse:
    """Test a new token; on success it becomes the active session and syncs."""
    body = await request.json()
    token = str(body.get("token", ""))

    result = await asyncio.to_thread(_get_client().test_connection, token)
    if not result.success or result.session is None:
        return JSONResponse(
            {**result.to_dict(), "message": f"Connection failed: {result.message}"},
            status_code=_status_for(result.error),
        )

    session = result.session
    _activate(session)
    sync = await _run_sync(session)
    return JSONResponse({
        "success": True,
        "message": result.message,
        "expiresAt": _iso(session.expires_at),
        "synced": sync.ok,
        "error": sync.error.to_dict() if sync.error else None,
    })


@app.delete("/api/token")
async def api_token_logout() -> JSONResponse:
    _end_session("logout", expired=False)
    return JSONResponse({"ok": True})


@app.get("/api/session")
async def api_session() -> JSONResponse:
    session = _state.session
    if session is None:
        return JSONResponse({"connected": False, "tokenExpired": _state.token_expired})

    now = _now()
    if not session.is_valid(now):
        _on_token_expired(session)
        return JSONResponse({"connected": False, "tokenExpired": True})

    remaining = session.remaining(now)
    return JSONResponse({
        "connected": True,
        "token": session.masked(),
        "issuedAt": _iso(session.issued_at),
        "expiresAt": _iso(session.expires_at),
        "remainingSeconds": int(remaining.total_seconds()),
        "countdown": format_countdown(remaining),
    })


# ══════════════════════════════════════════════════════════════════════════════
#  Sync and stats
# ══════════════════════════════════════════════════════════════════════════════

@app.post("/api/sync")
async def api_sync() -> JSONResponse:
    """Manual refresh / retry of a full sync."""
    session = _state.session
    if session is None or not session.is_valid(_now()):
        if session is not None:
            _on_token_expired(session)
        error = ClassifiedError(ErrorKind.SESSION_EXPIRED, "No active session")
        return _error_response(error, 401)

    _state.retry_count += 1
    result = await _run_sync(session)
    if not result.ok and result.error is not None:
        return _error_response(result.error, _status_for(result.error))
    return JSONResponse({
        "success": True,
        "lastSync": _iso(result.synced_at),
        "totalNotes": result.stats.total_notes if result.stats else 0,
    })


@app.get("/api/stats")
async def api_stats() -> JSONResponse:
    now = _now()
    return JSONResponse({
        "connected": _state.session is not None,
        "tokenExpired": _state.token_expired,
        "space": _state.space,
        "stats": _state.stats.to_dict() if _state.stats else None,
        "lastSync": _iso(_state.last_sync),
        "lastSyncText": format_relative(_state.last_sync, now) if _state.last_sync else None,
        "error": _state.last_error.to_dict() if _state.last_error else None,
        "retryCount": _state.retry_count,
    })


@app.post("/api/debug")
async def api_debug(request: Request) -> JSONResponse:
    """Raw endpoint call through the proxy chain, without validation."""
    body = await request.json()
    endpoint = str(body.get("endpoint", "")).strip()
    if not endpoint.startswith("/"):
        return JSONResponse({"error": "endpoint must start with '/'"}, status_code=400)
    try:
        result = await asyncio.to_thread(_get_client().raw_call, endpoint, str(body.get("token", "")))
    except TokenFormatError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    result["timestamp"] = _now().isoformat()
    return JSONResponse(result)


@app.on_event("shutdown")
async def _stop_expiry_watcher() -> None:
    if _state.watcher is not None:
        _state.watcher.stop()
