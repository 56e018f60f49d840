"""Tests for the CORS-relay fallback chain."""

from __future__ import annotations

import pytest
import requests

from src.capacities.proxy_fetcher import (
    DEFAULT_PROXIES,
    AllProxiesExhausted,
    FetchSuccess,
    ProxyEndpoint,
    ProxyFetcher,
    endpoints_from_config,
)
from tests.conftest import FakeHTTP, make_response

TARGET = "https://api.capacities.test/spaces"


def _proxies(n: int) -> list[ProxyEndpoint]:
    return [ProxyEndpoint(f"p{i}", f"https://p{i}.test/?", "query") for i in range(n)]


def _scripted(outcomes: list) -> FakeHTTP:
    """Answer the i-th call with outcomes[i]."""
    queue = list(outcomes)
    return FakeHTTP(lambda url, headers: queue.pop(0))


class TestProxyEndpoint:
    def test_query_mode_encodes_target(self) -> None:
        ep = ProxyEndpoint("cp", "https://corsproxy.io/?", "query")
        assert ep.wrap(TARGET) == "https://corsproxy.io/?https%3A%2F%2Fapi.capacities.test%2Fspaces"

    def test_path_mode_appends_verbatim(self) -> None:
        ep = ProxyEndpoint("thing", "https://thingproxy.freeboard.io/fetch/", "path")
        assert ep.wrap(TARGET) == "https://thingproxy.freeboard.io/fetch/" + TARGET

    def test_direct_mode_ignores_relay(self) -> None:
        assert ProxyEndpoint("direct", "", "direct").wrap(TARGET) == TARGET

    def test_endpoints_from_config_keeps_order(self) -> None:
        cfg = {"proxies": {"endpoints": [
            {"name": "b", "url": "https://b/", "mode": "path"},
            {"name": "a", "url": "https://a/?"},
        ]}}
        eps = endpoints_from_config(cfg)
        assert [e.name for e in eps] == ["b", "a"]
        assert eps[1].mode == "query"

    def test_endpoints_default_when_unconfigured(self) -> None:
        assert endpoints_from_config({}) == DEFAULT_PROXIES


class TestFetchViaProxy:
    @pytest.mark.parametrize("n,k", [(2, 0), (3, 1), (4, 3)])
    def test_stops_at_first_success(self, n: int, k: int) -> None:
        failures = [requests.ConnectionError("boom")] * k
        outcomes = failures + [make_response(200, "[]")] + [make_response(200, "[]")] * (n - k - 1)
        http = _scripted(outcomes)
        result = ProxyFetcher(_proxies(n), http=http).fetch_via_proxy(TARGET, {}, 1000)

        assert isinstance(result, FetchSuccess)
        assert result.proxy_index == k
        assert result.proxy_name == f"p{k}"
        assert len(http.calls) == k + 1

    def test_all_fail_records_every_cause(self) -> None:
        http = _scripted([
            requests.Timeout("slow"),
            make_response(500, "oops"),
            requests.ConnectionError("refused"),
        ])
        result = ProxyFetcher(_proxies(3), http=http).fetch_via_proxy(TARGET, {}, 250)

        assert isinstance(result, AllProxiesExhausted)
        assert len(result.failures) == 3
        assert [f.proxy_index for f in result.failures] == [0, 1, 2]
        assert result.failures[0].cause == "timed out after 250 ms"
        assert result.failures[1].cause == "HTTP 500"
        assert "ConnectionError" in result.failures[2].cause
        assert "p1: HTTP 500" in result.summary()

    def test_timeout_passed_in_seconds(self) -> None:
        seen: list[float] = []

        class _HTTP:
            def get(self, url, headers=None, timeout=None):
                seen.append(timeout)
                return make_response(200, "[]")

        ProxyFetcher(_proxies(1), http=_HTTP()).fetch_via_proxy(TARGET, {}, 1500)
        assert seen == [1.5]

    def test_html_body_with_200_is_still_transport_success(self) -> None:
        http = _scripted([make_response(200, "<!DOCTYPE html><p>rate limited</p>")])
        result = ProxyFetcher(_proxies(2), http=http).fetch_via_proxy(TARGET, {}, 1000)
        assert isinstance(result, FetchSuccess)
        assert len(http.calls) == 1

    def test_upstream_401_is_delivered_not_skipped(self) -> None:
        http = _scripted([make_response(401, {"error": "Unauthorized"})])
        result = ProxyFetcher(_proxies(3), http=http).fetch_via_proxy(TARGET, {}, 1000)
        assert isinstance(result, FetchSuccess)
        assert result.status == 401
        assert len(http.calls) == 1

    def test_proxy_own_403_page_falls_through(self) -> None:
        http = _scripted([
            make_response(403, "<html><body>See /corsdemo for more info</body></html>"),
            make_response(200, "[]"),
        ])
        result = ProxyFetcher(_proxies(2), http=http).fetch_via_proxy(TARGET, {}, 1000)
        assert isinstance(result, FetchSuccess)
        assert result.proxy_index == 1

    def test_headers_forwarded(self) -> None:
        http = _scripted([make_response(200, "[]")])
        ProxyFetcher(_proxies(1), http=http).fetch_via_proxy(TARGET, {"Authorization": "Bearer x"}, 1000)
        assert http.headers_seen[0] == {"Authorization": "Bearer x"}

    def test_requires_endpoints(self) -> None:
        with pytest.raises(ValueError):
            ProxyFetcher([], http=_scripted([]))
