# services/errors.py
"""
Error types raised by the API responsiveness measurement.

Fatal errors (invalid arguments, Prometheus query/decode failures, corrupt
quantile labels) leave the caller without a report. MetricViolationError is
the one recoverable outcome: it carries the complete report so the host can
still persist the summary.
"""
from typing import Any, Dict, List, Optional


class MeasurementError(RuntimeError):
    """Base error for the API responsiveness measurement."""

    code = "measurement_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        """Convert the error into a JSON-serializable payload."""
        return {"code": self.code, "message": self.message}


class InvalidArgumentError(ValueError):
    """Raised for a zero query timestamp or an unknown measurement action."""

    code = "invalid_argument"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class MeasurementStateError(MeasurementError):
    """Raised when 'gather' runs before 'start' recorded a window origin."""

    code = "invalid_state"


class PrometheusQueryError(MeasurementError):
    """Prometheus stayed unreachable (or kept rejecting the query) past the poll timeout."""

    code = "query_error"


class SampleDecodeError(MeasurementError):
    """Prometheus answered, but the response body is not a usable sample vector."""

    code = "decode_error"


class QuantileParseError(MeasurementError):
    """A latency sample carries a 'quantile' label that is not a float."""

    code = "parse_error"


class MetricViolationError(MeasurementError):
    """One or more API calls exceeded their latency threshold."""

    code = "metric_violation"

    def __init__(
        self,
        metric: str,
        violations: List[str],
        report: Any = None,
        summaries: Optional[List[Any]] = None,
    ):
        message = (
            f"{metric}: there should be no high-latency requests, but: "
            f"[{' '.join(violations)}]"
        )
        super().__init__(message)
        self.metric = metric
        self.violations = list(violations)
        self.report = report
        self.summaries = list(summaries or [])

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["violations"] = self.violations
        return payload
