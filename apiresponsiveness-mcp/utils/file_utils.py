# utils/file_utils.py
import os
import re
import json
import aiofiles
import pandas as pd
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from services.api_call_models import MeasurementSummary, to_milliseconds
from services.latency_thresholds import LatencyThresholds, get_latency_threshold

CSV_COLUMNS = [
    "resource", "subresource", "verb", "scope",
    "perc50_ms", "perc90_ms", "perc99_ms", "count",
    "threshold_ms", "violation",
]

# -----------------------------------------------
# Path helpers
# -----------------------------------------------
def _sanitize_filename(text: str) -> str:
    """Sanitize text to be safe for filenames."""
    text = text.strip().replace(" ", "_")
    return re.sub(r"[^a-zA-Z0-9._-]", "_", text)


def ensure_artifacts_dir(artifacts_base: str, run_id: str) -> Path:
    """Ensure artifacts/<run_id>/apiresponsiveness/ exists and return its path."""
    base = Path(artifacts_base) / _sanitize_filename(str(run_id)) / "apiresponsiveness"
    os.makedirs(base, exist_ok=True)
    return base

# -----------------------------------------------
# File writing functions
# -----------------------------------------------
async def write_json_output(data: Dict[str, Any], file_path: Path) -> None:
    """Write data to JSON file asynchronously"""
    try:
        async with aiofiles.open(file_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False))
    except OSError as e:
        raise OSError(f"Failed to write JSON file {file_path}: {e}") from e


def report_rows(summary: MeasurementSummary, thresholds: LatencyThresholds) -> List[Dict[str, Any]]:
    """Flatten a summary's report into one CSV row per API call, in report order."""
    rows = []
    for call in summary.report:
        threshold = get_latency_threshold(call, thresholds)
        rows.append({
            "resource": call.resource,
            "subresource": call.subresource,
            "verb": call.verb,
            "scope": call.scope,
            "perc50_ms": round(to_milliseconds(call.latency.perc50), 3),
            "perc90_ms": round(to_milliseconds(call.latency.perc90), 3),
            "perc99_ms": round(to_milliseconds(call.latency.perc99), 3),
            "count": call.count,
            "threshold_ms": round(to_milliseconds(threshold), 3),
            "violation": call.latency.perc99 > threshold,
        })
    return rows


async def write_summary_artifacts(
    summary: MeasurementSummary,
    run_id: str,
    artifacts_base: str,
    thresholds: LatencyThresholds,
    timestamp: Optional[datetime] = None,
) -> List[str]:
    """
    Persist a gather summary under artifacts/<run_id>/apiresponsiveness/.

    Writes:
        - <summary name>_<timestamp>.json : the serialized report
        - api_calls_<timestamp>.csv       : one row per call with threshold and verdict

    Returns:
        List of written file paths (JSON first).
    """
    outdir = ensure_artifacts_dir(artifacts_base, run_id)
    stamp = (timestamp or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H%M%SZ")

    json_path = outdir / f"{summary.name}_{stamp}.{summary.ext}"
    await write_json_output(json.loads(summary.content), json_path)

    csv_path = outdir / f"api_calls_{stamp}.csv"
    df = pd.DataFrame(report_rows(summary, thresholds), columns=CSV_COLUMNS)
    async with aiofiles.open(csv_path, 'w', newline='', encoding='utf-8') as f:
        await f.write(df.to_csv(index=False))

    return [str(json_path), str(csv_path)]
