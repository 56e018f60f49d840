"""Authenticated access to the Capacities REST API through CORS relays.

Every call follows the same path: check the session, fetch through the
proxy chain, look for an authentication rejection, validate the payload,
then parse records.  Failures below this module's public surface raise
``CapacitiesAPIError``; ``test_connection`` and ``sync`` are the boundary
and return classified values instead.

Nothing is retried automatically beyond the relay fallback inside a single
call -- retry is the user's decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator
from urllib.parse import urlencode

from src.analyzers.knowledge_stats import CapacitiesStats, RawRecord, aggregate
from src.capacities.errors import (
    CapacitiesAPIError,
    ClassifiedError,
    ErrorKind,
    TokenFormatError,
)
from src.capacities.proxy_fetcher import (
    AllProxiesExhausted,
    ProxyFetcher,
    endpoints_from_config,
)
from src.capacities.session import Clock, TokenSession, utc_now, validate_token_format
from src.capacities.validator import (
    NOTES,
    OBJECTS,
    SPACE,
    Expectation,
    detect_auth_rejection,
    validate,
)

logger = logging.getLogger("capacities.client")

DEFAULT_ENDPOINTS = {
    "space": "/spaces",
    "objects": "/objects",
    "notes": "/notes",
}


@dataclass(frozen=True)
class ConnectionTest:
    success: bool
    message: str
    session: TokenSession | None = None
    error: ClassifiedError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class SyncResult:
    stats: CapacitiesStats | None = None
    space: dict[str, Any] | None = None
    synced_at: datetime | None = None
    error: ClassifiedError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CapacitiesClient:
    def __init__(
        self,
        cfg: dict[str, Any],
        fetcher: ProxyFetcher | None = None,
        clock: Clock = utc_now,
    ) -> None:
        api = cfg.get("capacities") or {}
        self.api_base = str(api.get("api_base", "https://api.capacities.io/v1")).rstrip("/")
        self.endpoints = {**DEFAULT_ENDPOINTS, **(api.get("endpoints") or {})}
        self.page_size = int(api.get("page_size", 100))
        self.max_pages = int(api.get("max_pages", 50))
        self.timeout_ms = int((cfg.get("proxies") or {}).get("timeout_ms", 8000))
        self.fetcher = fetcher or ProxyFetcher(endpoints_from_config(cfg))
        self.clock = clock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _url(self, key: str, params: dict[str, Any] | None = None) -> str:
        path = self.endpoints.get(key, key)
        if not path.startswith("/"):
            path = "/" + path
        url = f"{self.api_base}{path}"
        if params:
            url = f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"
        return url

    def _require(self, session: TokenSession) -> None:
        if session.invalidated:
            raise CapacitiesAPIError(
                ErrorKind.SESSION_EXPIRED,
                f"Session is no longer valid ({session.invalidated_reason})",
            )
        if session.is_expired(self.clock()):
            session.invalidate("token expired")
            raise CapacitiesAPIError(ErrorKind.SESSION_EXPIRED, "API token expired after 1 hour")

    def _get(self, session: TokenSession, url: str, expectation: Expectation) -> Any:
        self._require(session)
        headers = {**session.authorization_header(), "Accept": "application/json"}
        outcome = self.fetcher.fetch_via_proxy(url, headers, self.timeout_ms)

        if isinstance(outcome, AllProxiesExhausted):
            raise CapacitiesAPIError(
                ErrorKind.TRANSPORT_FAILURE,
                f"All {len(outcome.failures)} proxy services failed for the {expectation.endpoint} endpoint",
                outcome.summary(),
            )

        rejection = detect_auth_rejection(outcome)
        if rejection:
            session.invalidate(f"authentication failed: {rejection}")
            raise CapacitiesAPIError(
                ErrorKind.AUTHENTICATION,
                "Invalid or expired API token",
                rejection,
            )

        result = validate(outcome, expectation)
        if result.error is not None:
            logger.warning(
                "Rejected %s payload via %s (%s): %s",
                expectation.endpoint, outcome.proxy_name, result.error.check, result.error.excerpt,
            )
            raise CapacitiesAPIError(result.error.kind, result.error.message, result.error.excerpt)
        return result.data

    @staticmethod
    def _records(data: Any, expectation: Expectation) -> list[RawRecord]:
        items = data
        if isinstance(data, dict):
            items = next((data[k] for k in expectation.keys if k in data), [])
        if not isinstance(items, list):
            raise CapacitiesAPIError(
                ErrorKind.MALFORMED_JSON,
                f"Expected a list of {expectation.endpoint}, got {type(items).__name__}",
            )
        try:
            return [RawRecord.from_api(item) for item in items]
        except (TypeError, ValueError, OverflowError) as exc:
            raise CapacitiesAPIError(
                ErrorKind.MALFORMED_JSON,
                f"Malformed {expectation.endpoint} record: {exc}",
            ) from exc

    def _has_more(self, data: Any, count: int) -> bool:
        if count == 0:
            return False
        if isinstance(data, dict):
            if "hasMore" in data:
                return bool(data["hasMore"])
            if "nextPage" in data:
                return data["nextPage"] is not None
            if "next" in data:
                return bool(data["next"])
        return count >= self.page_size

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def fetch_space(self, session: TokenSession) -> dict[str, Any]:
        data = self._get(session, self._url("space"), SPACE)
        if isinstance(data, dict) and isinstance(data.get("space"), dict):
            data = data["space"]
        spaces = data.get("spaces") if isinstance(data, dict) and "spaces" in data else data
        if isinstance(spaces, list):
            first = spaces[0] if spaces and isinstance(spaces[0], dict) else {}
            count = len(spaces)
        else:
            first = spaces if isinstance(spaces, dict) else {}
            count = 1 if first else 0
        return {
            "id": first.get("id"),
            "title": first.get("title") or first.get("name") or "",
            "spaceCount": count,
        }

    def fetch_objects(self, session: TokenSession) -> list[RawRecord]:
        data = self._get(session, self._url("objects"), OBJECTS)
        return self._records(data, OBJECTS)

    def fetch_notes(self, session: TokenSession) -> Iterator[list[RawRecord]]:
        """Yield note pages from page 1 until the API reports no more.

        Stops at ``max_pages`` to bound sync time on very large spaces.
        """
        page = 1
        while True:
            if page > self.max_pages:
                logger.warning("Stopped note pagination at the %d-page ceiling", self.max_pages)
                return
            data = self._get(
                session,
                self._url("notes", {"page": page, "pageSize": self.page_size}),
                NOTES,
            )
            records = self._records(data, NOTES)
            if records:
                yield records
            if not self._has_more(data, len(records)):
                return
            page += 1

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    def test_connection(self, token: str) -> ConnectionTest:
        """Format-check ``token``, then prove it with one authenticated call."""
        try:
            session = TokenSession.create(token, now=self.clock())
        except TokenFormatError as exc:
            return ConnectionTest(success=False, message=str(exc))

        try:
            space = self.fetch_space(session)
        except CapacitiesAPIError as exc:
            logger.warning("Connection test failed (%s): %s", exc.kind.value, exc.message)
            return ConnectionTest(success=False, message=exc.message, error=exc.classify())

        logger.info("Connected with token %s to space %r", session.masked(), space.get("title"))
        return ConnectionTest(success=True, message="Connected to Capacities", session=session)

    def sync(self, session: TokenSession) -> SyncResult:
        """One full pass: space, objects, every note page, then aggregate."""
        try:
            space = self.fetch_space(session)
            objects = self.fetch_objects(session)
            notes = [record for page in self.fetch_notes(session) for record in page]
        except CapacitiesAPIError as exc:
            logger.warning("Sync failed (%s): %s", exc.kind.value, exc.message)
            return SyncResult(error=exc.classify())

        now = self.clock()
        stats = aggregate(objects, notes, now.astimezone())
        logger.info(
            "Synced %d notes and %d objects from space %r",
            stats.total_notes, stats.total_objects, space.get("title"),
        )
        return SyncResult(stats=stats, space=space, synced_at=now)

    def raw_call(self, endpoint: str, token: str) -> dict[str, Any]:
        """Unvalidated GET for debugging: status, headers and body as delivered."""
        value = validate_token_format(token)
        headers = {"Authorization": f"Bearer {value}", "Accept": "application/json"}
        outcome = self.fetcher.fetch_via_proxy(self._url(endpoint), headers, self.timeout_ms)
        if isinstance(outcome, AllProxiesExhausted):
            return {"endpoint": endpoint, "status": "ERROR", "error": outcome.summary(), "data": None}
        return {
            "endpoint": endpoint,
            "status": outcome.status,
            "proxy": outcome.proxy_name,
            "headers": outcome.headers,
            "data": outcome.body,
        }
