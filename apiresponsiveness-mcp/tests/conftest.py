"""Pytest configuration and shared fixtures for the API responsiveness server."""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

SERVER_ROOT = Path(__file__).resolve().parent.parent

if str(SERVER_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVER_ROOT))

from services.api_call_models import Sample  # noqa: E402

T0 = datetime(2025, 10, 31, 14, 0, 0, tzinfo=timezone.utc)


def make_sample(
    resource: str,
    verb: str,
    value: float,
    *,
    subresource: str = "",
    scope: str = "namespace",
    quantile: Optional[str] = None,
) -> Sample:
    labels = {"resource": resource, "subresource": subresource, "verb": verb, "scope": scope}
    if quantile is not None:
        labels["quantile"] = quantile
    return Sample(
        resource=resource,
        subresource=subresource,
        verb=verb,
        scope=scope,
        labels=labels,
        value=value,
    )


def vector_body(results: List[Dict[str, Any]]) -> bytes:
    """Build a Prometheus instant-query success response."""
    return json.dumps({
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {"metric": metric, "value": [1761919200.0, value]}
                for metric, value in results
            ],
        },
    }).encode()


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class FakeMonotonic:
    """Monotonic clock paired with an async sleep that advances it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakePrometheus:
    """Stands in for PrometheusClient; answers latency and count queries from fixed samples."""

    def __init__(
        self,
        latency: Optional[List[Sample]] = None,
        count: Optional[List[Sample]] = None,
        latency_error: Optional[Exception] = None,
        count_error: Optional[Exception] = None,
    ) -> None:
        self.latency = latency or []
        self.count = count or []
        self.latency_error = latency_error
        self.count_error = count_error
        self.queries: List[tuple] = []

    async def gather_samples(self, query: str, at_time: datetime, ctx=None) -> List[Sample]:
        self.queries.append((query, at_time))
        if query.startswith("quantile_over_time"):
            if self.latency_error is not None:
                raise self.latency_error
            return list(self.latency)
        if self.count_error is not None:
            raise self.count_error
        return list(self.count)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_monotonic() -> FakeMonotonic:
    return FakeMonotonic()
