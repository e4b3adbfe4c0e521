# apiresponsiveness.py
import logging
from typing import Any, Dict
from fastmcp import FastMCP, Context    # ✅ FastMCP 2.x import

from services.measurement_host import MeasurementHost
from utils.config import load_config

config = load_config()
if config.get("general", {}).get("enable_logging", True):
    logging.basicConfig(
        level=logging.DEBUG if config.get("general", {}).get("enable_debug") else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

mcp = FastMCP(name="apiresponsiveness")
host = MeasurementHost(config)

@mcp.tool()
async def execute_measurement(action: str, run_id: str, ctx: Context) -> Dict[str, Any]:
    """
    Runs the APIResponsivenessPrometheus measurement for a test run.

    Call with action "start" when the load test begins and "gather" when it ends.
    "gather" queries Prometheus for apiserver request latency (p50/p90/p99) and
    request counts over the elapsed window, ranks API calls by p99 latency and
    checks each against its latency threshold (LIST and cluster-scoped LIST
    calls have their own, looser thresholds).

    Args:
        action (str): Measurement action, "start" or "gather".
        run_id (str): Test run identifier; artifacts are written under artifacts/<run_id>/apiresponsiveness/.
        ctx (Context, optional): Workflow context for chaining state/status/errors.

    Returns:
        dict: Contains:
            - 'status': "started", "success", "violation" or "failed"
            - 'files': Summary JSON and per-call CSV paths (gather only)
            - 'api_calls': Number of API calls in the report (gather only)
            - 'violations': Description of each call above its threshold
            - 'error': Error payload when status is "violation" or "failed"
    """
    return await host.execute(action, run_id, ctx)


@mcp.tool()
async def dispose_measurement(run_id: str, ctx: Context) -> Dict[str, Any]:
    """
    Releases the measurement state held for a test run once it is finished.

    Artifacts already written under artifacts/<run_id>/apiresponsiveness/ are kept.
    A later "gather" for the same run fails until it is started again.

    Args:
        run_id (str): Test run identifier used with execute_measurement.
        ctx (Context, optional): Workflow context for chaining state/status/errors.

    Returns:
        dict: 'status' is "disposed", or "failed" with an 'error' payload when
        no measurement was started for the run.
    """
    return await host.release(run_id, ctx)


if __name__ == "__main__":
    try:
        mcp.run("stdio")
    except KeyboardInterrupt:
        print("Shutting down API Responsiveness MCP…")
