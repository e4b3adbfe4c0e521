# services/latency_thresholds.py
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict

from services.api_call_models import CallAggregate
from utils.config import get_threshold_ms


@dataclass(frozen=True)
class LatencyThresholds:
    """p99 latency budgets by call shape."""
    api_call: timedelta = timedelta(seconds=1)
    list_call: timedelta = timedelta(seconds=5)
    cluster_scope_list_call: timedelta = timedelta(seconds=30)

    @classmethod
    def from_config(cls, config: Dict = None) -> "LatencyThresholds":
        ms = get_threshold_ms(config)
        return cls(
            api_call=timedelta(milliseconds=ms["api_call"]),
            list_call=timedelta(milliseconds=ms["list_call"]),
            cluster_scope_list_call=timedelta(milliseconds=ms["cluster_scope_list_call"]),
        )


def get_latency_threshold(call: CallAggregate, thresholds: LatencyThresholds) -> timedelta:
    """
    Select the latency budget for a call.

    LIST calls get the list budget, and cluster-scoped LIST calls get their own
    budget on top of that. Every other verb uses the base budget whatever its scope.
    """
    threshold = thresholds.api_call
    if call.verb == "LIST":
        threshold = thresholds.list_call
        if call.scope == "cluster":
            threshold = thresholds.cluster_scope_list_call
    return threshold
