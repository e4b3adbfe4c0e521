# services/api_call_models.py
"""
Data model for the API responsiveness measurement.

- Sample: one Prometheus vector element with its identity labels split out
- CallKey / CallAggregate: per (resource, subresource, verb, scope) statistics
- ApiResponsivenessReport: the ranked, serializable result of a gather
- MeasurementSummary: the named artifact handed back to the host
"""
import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterator, List, NamedTuple

MEASUREMENT_NAME = "APIResponsivenessPrometheus"

# Quantiles produced by the apiserver latency recording rules.
PERC50 = 0.50
PERC90 = 0.90
PERC99 = 0.99


def to_milliseconds(value: timedelta) -> float:
    return value / timedelta(milliseconds=1)


def format_duration(value: timedelta) -> str:
    """Render a duration the way the logs and violation messages show it, e.g. '1.25s' or '340ms'."""
    ms = to_milliseconds(value)
    if ms >= 1000:
        return f"{ms / 1000:g}s"
    return f"{ms:g}ms"


@dataclass
class Sample:
    """A Prometheus sample with the four call identity labels extracted."""
    resource: str
    subresource: str
    verb: str
    scope: str
    labels: Dict[str, str]
    value: float


class CallKey(NamedTuple):
    resource: str
    subresource: str
    verb: str
    scope: str

    @classmethod
    def from_sample(cls, sample: Sample) -> "CallKey":
        return cls(sample.resource, sample.subresource, sample.verb, sample.scope)

    def serialize(self) -> str:
        return "|".join(self)


class LatencyQuantiles:
    """Quantile -> latency mapping; setting an existing quantile overwrites it."""

    def __init__(self, values: Dict[float, timedelta] = None):
        self._values: Dict[float, timedelta] = dict(values or {})

    def set_quantile(self, quantile: float, latency: timedelta) -> None:
        self._values[quantile] = latency

    def get(self, quantile: float) -> timedelta:
        return self._values.get(quantile, timedelta(0))

    def quantiles(self) -> List[float]:
        return sorted(self._values)

    @property
    def perc50(self) -> timedelta:
        return self.get(PERC50)

    @property
    def perc90(self) -> timedelta:
        return self.get(PERC90)

    @property
    def perc99(self) -> timedelta:
        return self.get(PERC99)

    def to_dict(self) -> Dict[str, float]:
        """Latencies in milliseconds; perc50/90/99 are always present."""
        result = {
            "perc50": to_milliseconds(self.perc50),
            "perc90": to_milliseconds(self.perc90),
            "perc99": to_milliseconds(self.perc99),
        }
        for quantile in self.quantiles():
            name = f"perc{quantile * 100:g}"
            result.setdefault(name, to_milliseconds(self._values[quantile]))
        return result

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LatencyQuantiles):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return (
            f"LatencyQuantiles(perc50={format_duration(self.perc50)}, "
            f"perc90={format_duration(self.perc90)}, "
            f"perc99={format_duration(self.perc99)})"
        )


@dataclass
class CallAggregate:
    """Combined latency and request count statistics for one API call identity."""
    resource: str
    subresource: str
    verb: str
    scope: str
    latency: LatencyQuantiles = field(default_factory=LatencyQuantiles)
    count: int = 0

    @property
    def key(self) -> CallKey:
        return CallKey(self.resource, self.subresource, self.verb, self.scope)

    def describe(self) -> str:
        return (
            f"{{resource: {self.resource} subresource: {self.subresource} "
            f"verb: {self.verb} scope: {self.scope} "
            f"latency: {{perc50: {format_duration(self.latency.perc50)} "
            f"perc90: {format_duration(self.latency.perc90)} "
            f"perc99: {format_duration(self.latency.perc99)}}} "
            f"count: {self.count}}}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "subresource": self.subresource,
            "verb": self.verb,
            "scope": self.scope,
            "latency": self.latency.to_dict(),
            "count": self.count,
        }


def _latency_sort_key(call: CallAggregate):
    # Slowest p99 first; remaining fields only make ties deterministic.
    # Negated as a float: -timedelta.max is out of range.
    return (
        -to_milliseconds(call.latency.perc99),
        call.resource,
        call.subresource,
        call.verb,
        call.scope,
        call.count,
    )


class ApiResponsivenessReport:
    """Ordered collection of CallAggregate records produced by one gather."""

    def __init__(self, calls: List[CallAggregate] = None):
        self.calls: List[CallAggregate] = list(calls or [])

    def sort_by_latency(self) -> "ApiResponsivenessReport":
        self.calls.sort(key=_latency_sort_key)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {"apicalls": [call.to_dict() for call in self.calls]}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def __iter__(self) -> Iterator[CallAggregate]:
        return iter(self.calls)

    def __len__(self) -> int:
        return len(self.calls)

    def __getitem__(self, index: int) -> CallAggregate:
        return self.calls[index]


@dataclass
class MeasurementSummary:
    """Named summary returned to the host; content is the serialized report."""
    name: str
    ext: str
    content: str
    report: ApiResponsivenessReport

    @classmethod
    def from_report(cls, report: ApiResponsivenessReport) -> "MeasurementSummary":
        return cls(name=MEASUREMENT_NAME, ext="json", content=report.to_json(), report=report)
