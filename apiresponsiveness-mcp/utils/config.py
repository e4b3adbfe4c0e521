import yaml
import os
import platform
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, FrozenSet, Tuple

# Latency budgets for the APIResponsivenessPrometheus measurement.
DEFAULT_API_CALL_THRESHOLD_MS = 1000
DEFAULT_LIST_CALL_THRESHOLD_MS = 5000
DEFAULT_CLUSTER_SCOPE_LIST_CALL_THRESHOLD_MS = 30000

DEFAULT_IGNORED_RESOURCES = ("events",)
# Lower-case "proxy" is reported by some apiservers alongside "PROXY".
DEFAULT_IGNORED_VERBS = ("WATCH", "WATCHLIST", "PROXY", "proxy", "CONNECT")


def _get_server_root() -> str:
    """Resolve the apiresponsiveness-mcp directory from this file's location."""
    return str(Path(__file__).resolve().parent.parent)


def load_config():
    # Config files sit next to the server entry module, one level above utils/.
    server_root = _get_server_root()

    # Platform-specific config mapping
    config_map = {
        'Darwin': 'config.mac.yaml',
        'Windows': 'config.windows.yaml'
    }

    system = platform.system()
    platform_config = config_map.get(system)

    # Use platform-specific config if it exists, otherwise fall back to config.yaml
    candidate_files = [platform_config, 'config.yaml'] if platform_config else ['config.yaml']

    config = None
    for filename in candidate_files:
        config_path = os.path.join(server_root, filename)
        if os.path.exists(config_path):
            with open(config_path, 'r') as file:
                try:
                    config = yaml.safe_load(file)
                    break
                except yaml.YAMLError as e:
                    raise ValueError(f"Error parsing '{filename}': {e}")

    if config is None:
        raise FileNotFoundError("No valid configuration file found (checked platform-specific and default).")

    # Dynamically resolve artifacts_path if not explicitly set
    if not config.get("artifacts", {}).get("artifacts_path"):
        config.setdefault("artifacts", {})
        config["artifacts"]["artifacts_path"] = str(
            Path(server_root) / "artifacts"
        )

    return config


# ---------------------------------------------------------------------------
# Convenience accessors for Prometheus and measurement settings (with defaults)
# ---------------------------------------------------------------------------
def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' must be a mapping (dict).")
    return section


def _positive_seconds(value: Any, context: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{context}' must be a positive number, got: {value}")
    return float(value)


def get_poll_settings(config: dict = None) -> Tuple[timedelta, timedelta]:
    """Poll interval and overall poll timeout for Prometheus queries. Default: 30s / 5m."""
    if config is None:
        config = load_config()
    prom = _section(config, "prometheus")
    interval = _positive_seconds(
        prom.get("poll_interval_seconds", 30), "prometheus.poll_interval_seconds"
    )
    timeout = _positive_seconds(
        prom.get("poll_timeout_seconds", 300), "prometheus.poll_timeout_seconds"
    )
    return timedelta(seconds=interval), timedelta(seconds=timeout)


def get_request_timeout(config: dict = None) -> float:
    """Per-request HTTP timeout in seconds. Default: 60."""
    if config is None:
        config = load_config()
    prom = _section(config, "prometheus")
    return _positive_seconds(
        prom.get("request_timeout_seconds", 60), "prometheus.request_timeout_seconds"
    )


def get_latency_windows(config: dict = None) -> Tuple[timedelta, timedelta]:
    """
    Latency rule aggregation window and the minimum latency query window.
    Default: 5m / 1m.
    """
    if config is None:
        config = load_config()
    ar = _section(config, "api_responsiveness")
    window = _positive_seconds(
        ar.get("latency_window_seconds", 300), "api_responsiveness.latency_window_seconds"
    )
    minimum = _positive_seconds(
        ar.get("min_latency_window_seconds", 60), "api_responsiveness.min_latency_window_seconds"
    )
    return timedelta(seconds=window), timedelta(seconds=minimum)


def get_top_n(config: dict = None) -> int:
    """Number of slowest calls always logged after a gather. Default: 5."""
    if config is None:
        config = load_config()
    top_n = _section(config, "api_responsiveness").get("top_n", 5)
    if isinstance(top_n, bool) or not isinstance(top_n, int) or top_n < 0:
        raise ValueError(f"'api_responsiveness.top_n' must be a non-negative integer, got: {top_n}")
    return top_n


def get_threshold_ms(config: dict = None) -> Dict[str, float]:
    """
    Latency thresholds in milliseconds keyed by call shape.

    Returns:
        dict with 'api_call', 'list_call' and 'cluster_scope_list_call'.

    Raises:
        ValueError: If a configured threshold is not a positive number.
    """
    if config is None:
        config = load_config()
    block = _section(config, "api_responsiveness").get("thresholds_ms") or {}
    if not isinstance(block, dict):
        raise ValueError("'api_responsiveness.thresholds_ms' must be a mapping (dict).")

    defaults = {
        "api_call": DEFAULT_API_CALL_THRESHOLD_MS,
        "list_call": DEFAULT_LIST_CALL_THRESHOLD_MS,
        "cluster_scope_list_call": DEFAULT_CLUSTER_SCOPE_LIST_CALL_THRESHOLD_MS,
    }
    unknown = set(block) - set(defaults)
    if unknown:
        raise ValueError(
            f"Unknown key(s) in 'api_responsiveness.thresholds_ms': {sorted(unknown)}"
        )

    result = {}
    for name, default in defaults.items():
        result[name] = _positive_seconds(
            block.get(name, default), f"api_responsiveness.thresholds_ms.{name}"
        )
    return result


def get_ignore_lists(config: dict = None) -> Tuple[FrozenSet[str], FrozenSet[str]]:
    """Resources and verbs excluded from aggregation."""
    if config is None:
        config = load_config()
    ar = _section(config, "api_responsiveness")
    resources = ar.get("ignored_resources", list(DEFAULT_IGNORED_RESOURCES))
    verbs = ar.get("ignored_verbs", list(DEFAULT_IGNORED_VERBS))
    for name, values in (("ignored_resources", resources), ("ignored_verbs", verbs)):
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ValueError(f"'api_responsiveness.{name}' must be a list of strings.")
    return frozenset(resources), frozenset(verbs)


def get_artifacts_path(config: dict = None) -> str:
    if config is None:
        config = load_config()
    return config["artifacts"]["artifacts_path"]


if __name__ == '__main__':
    # For testing purposes, print the configuration.
    config = load_config()
    print("Loaded general configuration:")
    print(config)
