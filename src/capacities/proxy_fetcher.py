"""HTTP GET through an ordered chain of public CORS relays.

Public CORS proxies are individually unreliable and rate-limited, so each
request walks the configured list in order with a short per-attempt timeout
and stops at the first relay that delivers a response.  Every attempt
produces a tagged outcome; nothing is raised across the fallback loop.

Whether the delivered *payload* is usable is not decided here -- see
``src.capacities.validator``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union
from urllib.parse import quote

import requests

from src.capacities.validator import looks_like_html

logger = logging.getLogger("capacities.proxy")

# Statuses the upstream API uses to reject credentials.  A relay forwards
# them verbatim, so they are delivered to the caller instead of treated as
# a relay failure -- unless the body is the relay's own HTML refusal page.
AUTH_STATUSES = frozenset({401, 403})


@dataclass(frozen=True)
class ProxyEndpoint:
    """One CORS relay and how it embeds the target URL."""

    name: str
    url: str
    mode: str = "query"  # "query" | "path" | "direct"

    def wrap(self, target_url: str) -> str:
        if self.mode == "direct":
            return target_url
        if self.mode == "path":
            return f"{self.url}{target_url}"
        return f"{self.url}{quote(target_url, safe='')}"


DEFAULT_PROXIES: tuple[ProxyEndpoint, ...] = (
    ProxyEndpoint("corsproxy.io", "https://corsproxy.io/?", "query"),
    ProxyEndpoint("allorigins", "https://api.allorigins.win/raw?url=", "query"),
    ProxyEndpoint("thingproxy", "https://thingproxy.freeboard.io/fetch/", "path"),
    ProxyEndpoint("cors-anywhere", "https://cors-anywhere.herokuapp.com/", "path"),
)


def endpoints_from_config(cfg: dict[str, Any]) -> tuple[ProxyEndpoint, ...]:
    """Build the immutable relay list from ``proxies.endpoints``."""
    entries = (cfg.get("proxies") or {}).get("endpoints") or []
    if not entries:
        return DEFAULT_PROXIES
    return tuple(
        ProxyEndpoint(
            name=e.get("name") or e.get("url") or "direct",
            url=e.get("url", ""),
            mode=e.get("mode", "query"),
        )
        for e in entries
    )


@dataclass(frozen=True)
class FetchSuccess:
    status: int
    headers: dict[str, str]
    body: str
    proxy_index: int = 0
    proxy_name: str = ""


@dataclass(frozen=True)
class ProxyFailure:
    proxy_index: int
    proxy_name: str
    cause: str


@dataclass(frozen=True)
class AllProxiesExhausted:
    failures: tuple[ProxyFailure, ...] = field(default_factory=tuple)

    def summary(self) -> str:
        return "; ".join(f"{f.proxy_name}: {f.cause}" for f in self.failures)


FetchOutcome = Union[FetchSuccess, ProxyFailure, AllProxiesExhausted]


class ProxyFetcher:
    """Sequential relay fallback over a fixed endpoint list.

    ``http`` is anything with a ``requests``-compatible ``get(url, headers=,
    timeout=)``; a ``requests.Session`` is created when omitted.

    ``timeout_ms`` is handed to ``requests`` as its ``timeout``, which bounds
    the connect and each socket read separately, not the attempt as a whole.
    A relay that trickles its body can therefore hold one attempt past
    ``timeout_ms``; the worst case for a call is roughly the number of relays
    times the slowest relay's total transfer time.
    """

    def __init__(
        self,
        endpoints: tuple[ProxyEndpoint, ...] | list[ProxyEndpoint] = DEFAULT_PROXIES,
        http: Any = None,
    ) -> None:
        if not endpoints:
            raise ValueError("at least one proxy endpoint is required")
        self.endpoints: tuple[ProxyEndpoint, ...] = tuple(endpoints)
        self._http = http if http is not None else requests.Session()

    def fetch_via_proxy(
        self,
        target_url: str,
        headers: dict[str, str],
        timeout_ms: int,
    ) -> FetchSuccess | AllProxiesExhausted:
        failures: list[ProxyFailure] = []
        for index, endpoint in enumerate(self.endpoints):
            outcome = self._attempt(index, endpoint, target_url, headers, timeout_ms)
            if isinstance(outcome, FetchSuccess):
                if failures:
                    logger.info(
                        "Proxy %s succeeded after %d failed attempt(s)",
                        endpoint.name, len(failures),
                    )
                return outcome
            logger.warning("Proxy %s failed: %s", endpoint.name, outcome.cause)
            failures.append(outcome)

        logger.error("All %d proxies failed for %s", len(failures), _strip_query(target_url))
        return AllProxiesExhausted(failures=tuple(failures))

    def _attempt(
        self,
        index: int,
        endpoint: ProxyEndpoint,
        target_url: str,
        headers: dict[str, str],
        timeout_ms: int,
    ) -> FetchSuccess | ProxyFailure:
        url = endpoint.wrap(target_url)
        logger.debug("GET via %s: %s", endpoint.name, _strip_query(target_url))
        try:
            resp = self._http.get(url, headers=headers, timeout=timeout_ms / 1000.0)
        except requests.Timeout:
            return ProxyFailure(index, endpoint.name, f"timed out after {timeout_ms} ms")
        except requests.RequestException as exc:
            return ProxyFailure(index, endpoint.name, f"network error: {exc.__class__.__name__}")

        status = int(resp.status_code)
        body = resp.text or ""
        if status in AUTH_STATUSES and not looks_like_html(body):
            return FetchSuccess(status, dict(resp.headers), body, index, endpoint.name)
        if not 200 <= status < 300:
            return ProxyFailure(index, endpoint.name, f"HTTP {status}")
        return FetchSuccess(status, dict(resp.headers), body, index, endpoint.name)


def _strip_query(url: str) -> str:
    return url.split("?", 1)[0]
