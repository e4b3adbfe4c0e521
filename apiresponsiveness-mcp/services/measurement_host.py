# services/measurement_host.py
"""
Per-run lifecycle for the API responsiveness measurement.

Each test run (run_id) gets its own ApiResponsivenessEvaluator, built from
config.yaml on the first "start". Outcomes are converted into the status
dicts returned by the MCP tools, and gather summaries are written to
artifacts/<run_id>/apiresponsiveness/.
"""
import logging
from typing import Any, Callable, Dict, Optional

from fastmcp import Context    # ✅ FastMCP 2.x import

from services.api_call_models import MEASUREMENT_NAME
from services.call_aggregator import CallAggregator
from services.errors import (
    InvalidArgumentError,
    MeasurementError,
    MeasurementStateError,
    MetricViolationError,
)
from services.latency_thresholds import LatencyThresholds
from services.prometheus_api import PrometheusClient
from services.responsiveness_evaluator import ApiResponsivenessEvaluator
from utils.config import (
    load_config,
    get_artifacts_path,
    get_ignore_lists,
    get_latency_windows,
    get_top_n,
)
from utils.file_utils import write_summary_artifacts

logger = logging.getLogger(__name__)


def build_evaluator(config: Dict[str, Any], client: Optional[PrometheusClient] = None) -> ApiResponsivenessEvaluator:
    """Construct an evaluator from config.yaml settings."""
    ignored_resources, ignored_verbs = get_ignore_lists(config)
    latency_window, min_latency_window = get_latency_windows(config)
    return ApiResponsivenessEvaluator(
        client=client or PrometheusClient.from_config(config),
        aggregator=CallAggregator(ignored_resources, ignored_verbs),
        thresholds=LatencyThresholds.from_config(config),
        latency_window=latency_window,
        min_latency_window=min_latency_window,
        top_n=get_top_n(config),
    )


class MeasurementHost:
    """Keeps one evaluator per run_id and maps action outcomes to tool results."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        evaluator_factory: Optional[Callable[[Dict[str, Any]], ApiResponsivenessEvaluator]] = None,
    ):
        self.config = config if config is not None else load_config()
        self._factory = evaluator_factory or build_evaluator
        self._evaluators: Dict[str, ApiResponsivenessEvaluator] = {}

    def get_evaluator(self, run_id: str) -> Optional[ApiResponsivenessEvaluator]:
        return self._evaluators.get(run_id)

    def dispose(self, run_id: str) -> bool:
        evaluator = self._evaluators.pop(run_id, None)
        if evaluator is None:
            return False
        evaluator.dispose()
        return True

    async def release(self, run_id: str, ctx: Optional[Context] = None) -> Dict[str, Any]:
        """Dispose the evaluator of a finished run; written artifacts are kept."""
        result: Dict[str, Any] = {"run_id": run_id, "measurement": MEASUREMENT_NAME}
        if not self.dispose(run_id):
            return await self._failed(
                result,
                MeasurementStateError(f"{MEASUREMENT_NAME}: no measurement started for run '{run_id}'"),
                ctx,
            )
        logger.info("%s: disposed measurement for run '%s'", MEASUREMENT_NAME, run_id)
        if ctx:
            await ctx.info(f"{MEASUREMENT_NAME} disposed for run '{run_id}'")
        result["status"] = "disposed"
        return result

    async def execute(self, action: str, run_id: str, ctx: Optional[Context] = None) -> Dict[str, Any]:
        """
        Run a measurement action for a test run.

        Args:
            action: "start" or "gather".
            run_id: Test run identifier; also names the artifacts folder.
            ctx: Optional FastMCP context for logging.

        Returns:
            dict: {
              "status": "started" | "success" | "violation" | "failed",
              "run_id": str, "measurement": str,
              "files": [...], "api_calls": int, "violations": [...], "error": {...}
            }
        """
        result: Dict[str, Any] = {"run_id": run_id, "measurement": MEASUREMENT_NAME}
        if not run_id:
            return await self._failed(result, InvalidArgumentError("run_id must not be empty"), ctx)

        evaluator = self._evaluators.get(run_id)
        try:
            if action == "start" and evaluator is None:
                evaluator = self._factory(self.config)
                self._evaluators[run_id] = evaluator
            if evaluator is None:
                if action == "gather":
                    raise MeasurementStateError(
                        f"{MEASUREMENT_NAME}: no measurement started for run '{run_id}'"
                    )
                raise InvalidArgumentError(f"unknown action {action}")
            summaries = await evaluator.execute({"action": action}, ctx)
        except MetricViolationError as e:
            files = await self._write_summaries(e.summaries, run_id)
            logger.warning("%s: run '%s' violated latency thresholds: %s", MEASUREMENT_NAME, run_id, e)
            result.update({
                "status": "violation",
                "files": files,
                "api_calls": sum(len(s.report) for s in e.summaries),
                "violations": e.violations,
                "error": e.to_payload(),
            })
            return result
        except (InvalidArgumentError, MeasurementError) as e:
            return await self._failed(result, e, ctx)
        except ValueError as e:
            # Config accessors and URL resolution reject bad settings with ValueError.
            return await self._failed(result, InvalidArgumentError(f"invalid configuration: {e}"), ctx)

        if action == "start":
            result.update({"status": "started", "start_time": evaluator.start_time.isoformat()})
            return result

        files = await self._write_summaries(summaries, run_id)
        result.update({
            "status": "success",
            "files": files,
            "api_calls": sum(len(s.report) for s in summaries),
            "violations": [],
        })
        if ctx:
            await ctx.info(f"{MEASUREMENT_NAME} summary written: {', '.join(files)}")
        return result

    async def _write_summaries(self, summaries, run_id: str):
        files = []
        thresholds = LatencyThresholds.from_config(self.config)
        for summary in summaries:
            files.extend(await write_summary_artifacts(
                summary, run_id, get_artifacts_path(self.config), thresholds
            ))
        return files

    async def _failed(self, result: Dict[str, Any], error, ctx: Optional[Context]) -> Dict[str, Any]:
        logger.error("%s: run '%s' failed: %s", MEASUREMENT_NAME, result["run_id"], error)
        if ctx:
            await ctx.error(f"{MEASUREMENT_NAME} failed: {error}")
        result.update({"status": "failed", "error": error.to_payload()})
        return result
