"""Tests for the Prometheus sample fetcher and its poll loop."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import T0, vector_body
from services import prometheus_api
from services.errors import InvalidArgumentError, PrometheusQueryError, SampleDecodeError
from services.prometheus_api import (
    PrometheusClient,
    count_query,
    format_query_time,
    is_zero_time,
    latency_query,
    resolve_query_url,
)

QUERY_URL = "http://prometheus.test:9090/api/v1/query"


def _client(handler, fake_monotonic, **kwargs) -> PrometheusClient:
    return PrometheusClient(
        QUERY_URL,
        transport=httpx.MockTransport(handler),
        sleep=fake_monotonic.sleep,
        monotonic=fake_monotonic,
        **kwargs,
    )


def test_query_builders_render_whole_second_windows() -> None:
    assert latency_query(timedelta(minutes=4)) == (
        "quantile_over_time(0.99, apiserver:apiserver_request_latency:histogram_quantile[240s])"
    )
    assert count_query(timedelta(seconds=90.7)) == (
        "sum(increase(apiserver_request_latency_seconds_count[90s])) by (resource, subresource, scope, verb)"
    )


def test_format_query_time_is_rfc3339_utc() -> None:
    cest = timezone(timedelta(hours=2))
    assert format_query_time(datetime(2025, 10, 31, 16, 6, 34, 500, tzinfo=cest)) == "2025-10-31T14:06:34Z"
    assert format_query_time(datetime(2025, 10, 31, 14, 6, 34)) == "2025-10-31T14:06:34Z"


@pytest.mark.parametrize(
    "value",
    [None, datetime.min, datetime(1970, 1, 1, tzinfo=timezone.utc), datetime(1970, 1, 1)],
)
def test_is_zero_time(value) -> None:
    assert is_zero_time(value) is True


def test_non_zero_time_is_accepted() -> None:
    assert is_zero_time(T0) is False


@pytest.mark.asyncio
async def test_gather_samples_sends_query_and_time(fake_monotonic) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=vector_body([({"resource": "pods", "verb": "GET"}, "0.5")]))

    client = _client(handler, fake_monotonic, headers={"Authorization": "Bearer t0ken"})
    samples = await client.gather_samples("up", T0)

    assert len(samples) == 1
    assert samples[0].value == 0.5
    request = seen[0]
    assert request.url.path == "/api/v1/query"
    assert request.url.params["query"] == "up"
    assert request.url.params["time"] == "2025-10-31T14:00:00Z"
    assert request.headers["Authorization"] == "Bearer t0ken"
    assert fake_monotonic.sleeps == []


@pytest.mark.asyncio
async def test_gather_samples_drops_nan_values(fake_monotonic) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=vector_body([
            ({"resource": "pods", "verb": "GET"}, "NaN"),
            ({"resource": "nodes", "verb": "GET"}, "0.25"),
        ]))

    samples = await _client(handler, fake_monotonic).gather_samples("q", T0)

    assert [s.resource for s in samples] == ["nodes"]


@pytest.mark.asyncio
async def test_zero_time_fails_without_network_call(fake_monotonic) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=vector_body([]))

    with pytest.raises(InvalidArgumentError, match="can't be zero"):
        await _client(handler, fake_monotonic).gather_samples("q", datetime.min)

    assert calls == []


@pytest.mark.asyncio
async def test_transport_errors_are_retried_until_success(fake_monotonic) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=vector_body([({"resource": "pods", "verb": "GET"}, "1")]))

    samples = await _client(handler, fake_monotonic).gather_samples("q", T0)

    assert len(samples) == 1
    assert len(attempts) == 3
    assert fake_monotonic.sleeps == [30.0, 30.0]


@pytest.mark.asyncio
async def test_poll_timeout_wraps_last_error(fake_monotonic) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(503, text="unavailable")

    with pytest.raises(PrometheusQueryError, match="query error") as exc_info:
        await _client(handler, fake_monotonic).gather_samples("q", T0)

    assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
    # Immediate attempt plus one every 30s within the 5 minute timeout.
    assert len(attempts) == 11
    assert sum(fake_monotonic.sleeps) == 300.0


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    httpx.InvalidURL("Invalid port: 'nine'"),
    httpx.StreamConsumed(),
], ids=["invalid-url", "stream-error"])
async def test_non_http_errors_are_retried_and_wrapped(fake_monotonic, error) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise error

    client = _client(
        handler,
        fake_monotonic,
        poll_interval=timedelta(seconds=10),
        poll_timeout=timedelta(seconds=15),
    )
    with pytest.raises(PrometheusQueryError, match="query error") as exc_info:
        await client.gather_samples("q", T0)

    assert exc_info.value.__cause__ is error
    assert len(attempts) == 2
    assert fake_monotonic.sleeps == [10.0]


@pytest.mark.asyncio
async def test_poll_cadence_follows_configured_interval(fake_monotonic) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(
        handler,
        fake_monotonic,
        poll_interval=timedelta(seconds=10),
        poll_timeout=timedelta(seconds=25),
    )
    with pytest.raises(PrometheusQueryError):
        await client.gather_samples("q", T0)

    assert fake_monotonic.sleeps == [10.0, 10.0]
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_decode_errors_are_not_retried(fake_monotonic) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(200, content=b'{"status": "success", "data": {"resultType": "scalar", "result": [0, "1"]}}')

    with pytest.raises(SampleDecodeError):
        await _client(handler, fake_monotonic).gather_samples("q", T0)

    assert len(attempts) == 1
    assert fake_monotonic.sleeps == []


@pytest.mark.asyncio
async def test_empty_result_is_not_retried(fake_monotonic) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(200, content=vector_body([]))

    assert await _client(handler, fake_monotonic).gather_samples("q", T0) == []
    assert len(attempts) == 1


def test_resolve_query_url_uses_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(prometheus_api, "PROMETHEUS_URL", None)
    config = {"prometheus": {"base_url": "http://prom.local:9090/"}}

    assert resolve_query_url(config) == "http://prom.local:9090/api/v1/query"


def test_resolve_query_url_prefers_environment_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(prometheus_api, "PROMETHEUS_URL", "http://override:9090")
    config = {"prometheus": {"base_url": "http://prom.local:9090"}}

    assert resolve_query_url(config) == "http://override:9090/api/v1/query"


def test_resolve_query_url_through_kube_service_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(prometheus_api, "PROMETHEUS_URL", "http://ignored:9090")
    config = {"prometheus": {"kube_proxy": {"enabled": True, "apiserver_url": "https://10.0.0.1:6443/"}}}

    assert resolve_query_url(config) == (
        "https://10.0.0.1:6443/api/v1/namespaces/monitoring/services/http:prometheus-k8s:9090/proxy/api/v1/query"
    )


def test_resolve_query_url_requires_a_target(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(prometheus_api, "PROMETHEUS_URL", None)

    with pytest.raises(ValueError, match="not configured"):
        resolve_query_url({"prometheus": {}})


def test_from_config_applies_poll_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(prometheus_api, "PROMETHEUS_URL", None)
    config = {
        "prometheus": {
            "base_url": "http://prom.local:9090",
            "ssl_verification": "disabled",
            "poll_interval_seconds": 5,
            "poll_timeout_seconds": 60,
        }
    }

    client = PrometheusClient.from_config(config)

    assert client.query_url == "http://prom.local:9090/api/v1/query"
    assert client.verify is False
    assert client.poll_interval == timedelta(seconds=5)
    assert client.poll_timeout == timedelta(seconds=60)
