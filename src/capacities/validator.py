"""Reject proxy-mangled bodies before trusting them as Capacities API JSON.

A relay that fails often still answers ``200 OK`` -- with its own HTML
error page, a truncated body, or a JSON status wrapper around nothing.
These checks run in a fixed order so the first symptom found names the
problem:

    empty -> html -> truncated -> json -> shape

The first three point at the relay (wait and retry); the last two point at
the payload itself (stale token or a transient API issue).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from src.capacities.errors import ErrorKind

if TYPE_CHECKING:
    from src.capacities.proxy_fetcher import FetchSuccess

EXCERPT_LIMIT = 200

_HTML_SIGNATURES = ("<!doctype", "<html", "<head", "<body")

_AUTH_PHRASES = re.compile(
    r"unauthori[sz]ed|invalid[ _-]?(api[ _-]?)?token|token (is |has )?(been )?(invalid|expired|revoked)"
    r"|expired[ _-]?token|invalid credentials|authentication (failed|required)|forbidden",
    re.IGNORECASE,
)

_CHECK_KINDS: dict[str, ErrorKind] = {
    "empty": ErrorKind.PROXY_PAYLOAD,
    "html": ErrorKind.PROXY_PAYLOAD,
    "truncated": ErrorKind.PROXY_PAYLOAD,
    "json": ErrorKind.MALFORMED_JSON,
    "shape": ErrorKind.MALFORMED_JSON,
}


@dataclass(frozen=True)
class Expectation:
    """Minimal shape an endpoint's payload must have.

    A payload passes if it is a list (when ``accept_list``) or an object
    carrying at least one of ``keys``.
    """

    endpoint: str
    accept_list: bool = True
    keys: tuple[str, ...] = ()

    def matches(self, data: Any) -> bool:
        if isinstance(data, list):
            return self.accept_list
        if isinstance(data, dict):
            return any(k in data for k in self.keys)
        return False


SPACE = Expectation("space", accept_list=True, keys=("spaces", "id", "space", "title"))
OBJECTS = Expectation("objects", accept_list=True, keys=("objects", "data", "items", "results"))
NOTES = Expectation("notes", accept_list=True, keys=("notes", "data", "items", "results"))


@dataclass(frozen=True)
class ValidationError:
    check: str
    message: str
    excerpt: str = ""

    @property
    def kind(self) -> ErrorKind:
        return check_kind(self.check)


@dataclass(frozen=True)
class ValidationResult:
    data: Any = None
    error: ValidationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def check_kind(check: str) -> ErrorKind:
    return _CHECK_KINDS.get(check, ErrorKind.MALFORMED_JSON)


def excerpt(body: str, limit: int = EXCERPT_LIMIT) -> str:
    """Collapse whitespace and cut ``body`` to ``limit`` characters."""
    flat = " ".join(body.split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 3] + "..."


def looks_like_html(body: str) -> bool:
    head = body.lstrip("\ufeff \t\r\n")[:64].lower()
    return head.startswith(_HTML_SIGNATURES)


def _declared_length(headers: dict[str, str]) -> int | None:
    lowered = {k.lower(): v for k, v in headers.items()}
    # Content-Length of an encoded body counts compressed bytes.
    if lowered.get("content-encoding", "identity").lower() != "identity":
        return None
    try:
        return int(lowered["content-length"])
    except (KeyError, TypeError, ValueError):
        return None


def validate(outcome: FetchSuccess, expectation: Expectation) -> ValidationResult:
    body = outcome.body or ""

    if not body.strip():
        return ValidationResult(error=ValidationError("empty", "Empty response body from proxy"))

    if looks_like_html(body):
        return ValidationResult(error=ValidationError(
            "html",
            f"Proxy returned an HTML page instead of JSON (HTTP {outcome.status})",
            excerpt(body),
        ))

    # Content-Length counts bytes; a relay that drops the connection mid-body
    # still hands back whatever arrived.
    declared = _declared_length(outcome.headers)
    received = len(body.encode("utf-8"))
    if declared is not None and received < declared:
        return ValidationResult(error=ValidationError(
            "truncated",
            f"Response truncated: received {received} of {declared} bytes",
            excerpt(body),
        ))

    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        return ValidationResult(error=ValidationError(
            "json",
            f"Invalid JSON from {expectation.endpoint} endpoint: {exc.msg}",
            excerpt(body),
        ))

    if not expectation.matches(data):
        return ValidationResult(error=ValidationError(
            "shape",
            f"Unexpected JSON shape from {expectation.endpoint} endpoint",
            excerpt(body),
        ))

    return ValidationResult(data=data)


def detect_auth_rejection(outcome: FetchSuccess) -> str | None:
    """Best-effort detection of an authentication failure.

    Returns a short reason, or None.  Matches a 401/403 status, or a JSON
    object body whose ``error``/``message``/``detail`` text reads like a
    credential rejection.  The upstream error schema is not documented, so
    this is heuristic.
    """
    if outcome.status in (401, 403):
        return f"HTTP {outcome.status}"

    body = (outcome.body or "").strip()
    if not body.startswith("{"):
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    for key in ("error", "message", "detail", "error_description"):
        value = data.get(key)
        if isinstance(value, dict):
            value = value.get("message") or value.get("code")
        if isinstance(value, str) and _AUTH_PHRASES.search(value):
            return excerpt(value, 80)
    return None
