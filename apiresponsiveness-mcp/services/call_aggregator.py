# services/call_aggregator.py
"""
Merges the latency-quantile stream and the request-count stream returned by
Prometheus into one CallAggregate per (resource, subresource, verb, scope).
"""
import math
import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Sequence

from services.api_call_models import CallAggregate, CallKey, Sample
from services.errors import QuantileParseError
from utils.config import DEFAULT_IGNORED_RESOURCES, DEFAULT_IGNORED_VERBS

logger = logging.getLogger(__name__)


def round_half_away_from_zero(value: float) -> int:
    """Round to the nearest integer, halves away from zero (0.5 -> 1, 2.5 -> 3)."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def seconds_to_latency(value: float) -> timedelta:
    """Convert fractional seconds to a duration; +Inf and overflow clamp to timedelta.max."""
    try:
        return timedelta(seconds=value)
    except OverflowError:
        return timedelta.max if value > 0 else timedelta(0)


class CallAggregator:
    """Builds CallAggregate records, skipping noisy resources and verbs."""

    def __init__(
        self,
        ignored_resources: Iterable[str] = DEFAULT_IGNORED_RESOURCES,
        ignored_verbs: Iterable[str] = DEFAULT_IGNORED_VERBS,
    ):
        self.ignored_resources = frozenset(ignored_resources)
        self.ignored_verbs = frozenset(ignored_verbs)

    def is_ignored(self, sample: Sample) -> bool:
        return sample.resource in self.ignored_resources or sample.verb in self.ignored_verbs

    def aggregate(
        self, latency_samples: Sequence[Sample], count_samples: Sequence[Sample]
    ) -> List[CallAggregate]:
        """
        Aggregate latency and count samples by call identity.

        Latency samples are applied in input order, so a later sample for the
        same call and quantile overwrites an earlier one. Count samples that
        round to zero neither create nor update a record.

        Raises:
            QuantileParseError: If any latency sample has a non-float 'quantile' label.
        """
        calls: Dict[str, CallAggregate] = {}

        def get_call(sample: Sample) -> CallAggregate:
            key = CallKey.from_sample(sample)
            call = calls.get(key.serialize())
            if call is None:
                call = CallAggregate(*key)
                calls[key.serialize()] = call
            return call

        for sample in latency_samples:
            raw_quantile = sample.labels.get("quantile", "")
            try:
                quantile = float(raw_quantile)
            except ValueError:
                raise QuantileParseError(
                    f"invalid quantile label {raw_quantile!r} on sample "
                    f"{CallKey.from_sample(sample).serialize()}"
                )
            if self.is_ignored(sample):
                continue
            get_call(sample).latency.set_quantile(quantile, seconds_to_latency(sample.value))

        for sample in count_samples:
            if self.is_ignored(sample):
                continue
            count = round_half_away_from_zero(sample.value)
            if count == 0:
                continue
            get_call(sample).count = count

        logger.debug(
            "Aggregated %d latency and %d count samples into %d calls",
            len(latency_samples), len(count_samples), len(calls),
        )
        return list(calls.values())
