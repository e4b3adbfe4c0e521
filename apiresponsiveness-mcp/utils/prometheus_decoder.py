"""
prometheus_decoder.py

Decoder for Prometheus instant-query responses (GET /api/v1/query).

Expected envelope:
    {
      "status": "success",
      "data": {
        "resultType": "vector",
        "result": [
          {"metric": {"resource": "pods", "verb": "LIST", ...}, "value": [1700000000.123, "0.042"]}
        ]
      }
    }

This module is stateless and has no side effects: it only turns raw response
bytes into Sample objects. The network side lives in services/prometheus_api.py.
"""

import json
from typing import Any, Dict, List, Union

from services.api_call_models import Sample
from services.errors import SampleDecodeError

IDENTITY_LABELS = ("resource", "subresource", "verb", "scope")


def _decode_labels(metric: Any, index: int) -> Dict[str, str]:
    if not isinstance(metric, dict):
        raise SampleDecodeError(f"result[{index}].metric must be a mapping, got: {type(metric).__name__}")
    for name, value in metric.items():
        if not isinstance(value, str):
            raise SampleDecodeError(
                f"result[{index}].metric label '{name}' must be a string, got: {value!r}"
            )
    return dict(metric)


def _decode_value(value: Any, index: int) -> float:
    # Prometheus encodes sample values as strings ("NaN", "+Inf" included).
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise SampleDecodeError(f"result[{index}].value must be a [timestamp, value] pair, got: {value!r}")
    try:
        return float(value[1])
    except (TypeError, ValueError):
        raise SampleDecodeError(f"result[{index}].value has a non-numeric sample value: {value[1]!r}")


def decode_samples(raw: Union[bytes, str]) -> List[Sample]:
    """
    Decode a Prometheus instant-query response into samples.

    Args:
        raw: Response body as returned by the query executor.

    Returns:
        Samples in response order. NaN values are kept; filtering is the caller's job.

    Raises:
        SampleDecodeError: If the body is not a successful vector response.
    """
    try:
        envelope = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise SampleDecodeError(f"invalid JSON response: {e}")

    if not isinstance(envelope, dict):
        raise SampleDecodeError("response must be a JSON object")

    status = envelope.get("status")
    if status != "success":
        error_type = envelope.get("errorType", "unknown")
        error = envelope.get("error", "no error message")
        raise SampleDecodeError(f"query status '{status}' ({error_type}): {error}")

    data = envelope.get("data")
    if not isinstance(data, dict):
        raise SampleDecodeError("response is missing the 'data' object")

    result_type = data.get("resultType")
    if result_type != "vector":
        raise SampleDecodeError(f"unsupported result type '{result_type}', expected 'vector'")

    result = data.get("result") or []
    if not isinstance(result, list):
        raise SampleDecodeError("'data.result' must be a list")

    samples: List[Sample] = []
    for index, item in enumerate(result):
        if not isinstance(item, dict):
            raise SampleDecodeError(f"result[{index}] must be an object")
        labels = _decode_labels(item.get("metric", {}), index)
        value = _decode_value(item.get("value"), index)
        samples.append(Sample(
            resource=labels.get("resource", ""),
            subresource=labels.get("subresource", ""),
            verb=labels.get("verb", ""),
            scope=labels.get("scope", ""),
            labels=labels,
            value=value,
        ))
    return samples
