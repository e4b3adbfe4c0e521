# services/responsiveness_evaluator.py
"""
API responsiveness measurement driven by Prometheus.

The host calls execute() with action "start" at the beginning of a test run
and "gather" at the end. gather() queries the apiserver latency recording
rule and request counters over the elapsed window, aggregates them per API
call, ranks them by p99 latency and checks each against its threshold.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Mapping, Optional, Tuple

from fastmcp import Context    # ✅ FastMCP 2.x import

from services.api_call_models import (
    MEASUREMENT_NAME,
    ApiResponsivenessReport,
    CallAggregate,
    MeasurementSummary,
    Sample,
    format_duration,
)
from services.call_aggregator import CallAggregator
from services.errors import (
    InvalidArgumentError,
    MeasurementStateError,
    MetricViolationError,
    PrometheusQueryError,
    SampleDecodeError,
)
from services.latency_thresholds import LatencyThresholds, get_latency_threshold
from services.prometheus_api import PrometheusClient, count_query, latency_query

logger = logging.getLogger(__name__)

VIOLATION_METRIC = "top latency metric"
MIN_COUNT_WINDOW = timedelta(seconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_latency_window(
    measurement_duration: timedelta,
    rule_window: timedelta = timedelta(minutes=5),
    min_window: timedelta = timedelta(minutes=1),
) -> timedelta:
    """
    The latency rule is itself a 5m rolling aggregation, so the first rule
    window of the test is skipped. Never shorter than min_window.
    """
    return max(measurement_duration - rule_window, min_window)


class ApiResponsivenessEvaluator:
    """One instance per test run; holds only the window origin between actions."""

    def __init__(
        self,
        client: PrometheusClient,
        aggregator: Optional[CallAggregator] = None,
        thresholds: Optional[LatencyThresholds] = None,
        latency_window: timedelta = timedelta(minutes=5),
        min_latency_window: timedelta = timedelta(minutes=1),
        top_n: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.aggregator = aggregator or CallAggregator()
        self.thresholds = thresholds or LatencyThresholds()
        self.latency_window = latency_window
        self.min_latency_window = min_latency_window
        self.top_n = top_n
        self._clock = clock
        self.start_time: Optional[datetime] = None

    def __str__(self) -> str:
        return MEASUREMENT_NAME

    # -----------------------------------------------
    # Host surface
    # -----------------------------------------------
    async def execute(
        self, params: Mapping[str, object], ctx: Optional[Context] = None
    ) -> List[MeasurementSummary]:
        """
        Run one measurement action.

        Args:
            params: Measurement parameters; 'action' must be "start" or "gather".
            ctx: Optional FastMCP context for progress reporting.

        Returns:
            [] for "start", a single summary for "gather".

        Raises:
            InvalidArgumentError: Missing or unknown action.
            MetricViolationError: Some calls exceeded their threshold; the
                summary is attached as err.summaries.
            PrometheusQueryError, SampleDecodeError, QuantileParseError,
            MeasurementStateError: Fatal, no summary.
        """
        action = params.get("action")
        if not isinstance(action, str):
            raise InvalidArgumentError("measurement parameter 'action' must be a string")

        if action == "start":
            self.start()
            if ctx:
                await ctx.info(f"{self}: measurement window started at {self.start_time.isoformat()}")
            return []
        if action == "gather":
            try:
                report = await self.gather(ctx)
            except MetricViolationError as e:
                e.summaries = [MeasurementSummary.from_report(e.report)]
                raise
            return [MeasurementSummary.from_report(report)]
        raise InvalidArgumentError(f"unknown action {action}")

    def dispose(self) -> None:
        """Nothing to clean up; kept for hosts that dispose measurements after a run."""

    # -----------------------------------------------
    # Actions
    # -----------------------------------------------
    def start(self) -> None:
        self.start_time = self._clock()

    async def gather(self, ctx: Optional[Context] = None) -> ApiResponsivenessReport:
        calls = await self._gather_api_calls(ctx)
        report = ApiResponsivenessReport(calls).sort_by_latency()

        violations: List[str] = []
        remaining_top = self.top_n
        for call in report:
            threshold = get_latency_threshold(call, self.thresholds)
            is_bad = call.latency.perc99 > threshold
            if is_bad:
                violations.append(
                    f"got: {call.describe()}; expected perc99 <= {format_duration(threshold)}"
                )
            if remaining_top > 0 or is_bad:
                remaining_top -= 1
                prefix = "WARNING " if is_bad else ""
                logger.info(
                    "%s: %sTop latency metric: %s; threshold: %s",
                    self, prefix, call.describe(), format_duration(threshold),
                )

        if violations:
            if ctx:
                await ctx.warning(f"{self}: {len(violations)} API call(s) exceeded their latency threshold")
            raise MetricViolationError(VIOLATION_METRIC, violations, report=report)

        if ctx:
            await ctx.info(f"{self}: {len(report)} API call(s) within latency thresholds")
        return report

    # -----------------------------------------------
    # Helpers
    # -----------------------------------------------
    def measurement_windows(self, now: datetime) -> Tuple[timedelta, timedelta]:
        """Latency query window and count query window for a gather at 'now'."""
        if self.start_time is None:
            raise MeasurementStateError(f"{self}: 'gather' called before 'start'")
        measurement_duration = now - self.start_time
        latency = compute_latency_window(
            measurement_duration, self.latency_window, self.min_latency_window
        )
        count = max(measurement_duration, MIN_COUNT_WINDOW)
        return latency, count

    async def _gather_api_calls(self, ctx: Optional[Context]) -> List[CallAggregate]:
        measurement_end = self._clock()
        latency_window, count_window = self.measurement_windows(measurement_end)

        latency_samples = await self.client.gather_samples(
            latency_query(latency_window), measurement_end, ctx
        )

        count_samples: List[Sample] = []
        try:
            count_samples = await self.client.gather_samples(
                count_query(count_window), measurement_end, ctx
            )
        except (PrometheusQueryError, SampleDecodeError) as e:
            # A failed count query leaves every Count at zero.
            logger.error("%s: count samples gathering error: %s", self, e)
            if ctx:
                await ctx.error(f"{self}: count samples gathering error: {e}")

        return self.aggregator.aggregate(latency_samples, count_samples)
