# services/prometheus_api.py
import os
import math
import time
import asyncio
import logging
import httpx
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from dotenv import load_dotenv
from fastmcp import Context    # ✅ FastMCP 2.x import

from services.api_call_models import Sample
from services.errors import InvalidArgumentError, PrometheusQueryError
from utils.config import load_config, get_poll_settings, get_request_timeout
from utils.prometheus_decoder import decode_samples

logger = logging.getLogger(__name__)

# -----------------------------------------------
# Bootstrap
# -----------------------------------------------
load_dotenv()   # Load environment variables from .env file such as bearer tokens

PROMETHEUS_URL = os.getenv("PROMETHEUS_URL")
PROMETHEUS_BEARER_TOKEN = os.getenv("PROMETHEUS_BEARER_TOKEN")

# CA bundle path for SSL verification
CA_BUNDLE = os.getenv("REQUESTS_CA_BUNDLE") or os.getenv("SSL_CERT_FILE")

# The window placeholder is replaced with a Prometheus duration such as "240s".
LATENCY_QUERY = "quantile_over_time(0.99, apiserver:apiserver_request_latency:histogram_quantile[%s])"
COUNT_QUERY = "sum(increase(apiserver_request_latency_seconds_count[%s])) by (resource, subresource, scope, verb)"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# httpx.InvalidURL and httpx.StreamError do not derive from httpx.HTTPError.
QUERY_ERRORS = (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError)

# -----------------------------------------------
# Helpers
# -----------------------------------------------

def to_prometheus_duration(window: timedelta) -> str:
    """Render a window as whole seconds, the form used in range selectors."""
    return f"{int(window.total_seconds())}s"


def latency_query(window: timedelta) -> str:
    return LATENCY_QUERY % to_prometheus_duration(window)


def count_query(window: timedelta) -> str:
    return COUNT_QUERY % to_prometheus_duration(window)


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are treated as UTC; no local-time conversion is performed.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_zero_time(at_time: Optional[datetime]) -> bool:
    """
    True for an unset query time: None or datetime.min.

    The Unix epoch (UTC) is rejected as well, as an extension of the zero-time
    check: timestamp 0 is the usual "unset" value of numeric time fields.
    """
    if at_time is None:
        return True
    if at_time.replace(tzinfo=None) == datetime.min:
        return True
    return _as_utc(at_time) == _EPOCH


def format_query_time(at_time: datetime) -> str:
    """RFC3339 timestamp in UTC, e.g. '2025-10-31T14:06:34Z'."""
    return _as_utc(at_time).strftime("%Y-%m-%dT%H:%M:%SZ")


def resolve_query_url(config: Dict[str, Any]) -> str:
    """
    Build the full /api/v1/query URL from config.yaml.

    When prometheus.kube_proxy.enabled is set, the query goes through the
    Kubernetes API-server service proxy:
        <apiserver>/api/v1/namespaces/<ns>/services/<scheme>:<service>:<port>/proxy/api/v1/query
    Otherwise PROMETHEUS_URL (env) or prometheus.base_url is used directly.
    """
    prom = config.get("prometheus", {}) or {}
    query_path = str(prom.get("query_path", "api/v1/query")).strip("/")
    proxy = prom.get("kube_proxy", {}) or {}

    if proxy.get("enabled"):
        apiserver = str(proxy.get("apiserver_url", "")).rstrip("/")
        if not apiserver:
            raise ValueError("'prometheus.kube_proxy.apiserver_url' is required when kube_proxy is enabled.")
        namespace = proxy.get("namespace", "monitoring")
        service = proxy.get("service", "prometheus-k8s")
        port = proxy.get("port", 9090)
        scheme = proxy.get("scheme", "http")
        base = f"{apiserver}/api/v1/namespaces/{namespace}/services/{scheme}:{service}:{port}/proxy"
    else:
        base = (PROMETHEUS_URL or prom.get("base_url") or "").rstrip("/")
        if not base:
            raise ValueError("Prometheus URL not configured. Set PROMETHEUS_URL or 'prometheus.base_url'.")

    return f"{base}/{query_path}"


def get_ssl_verify_setting(config: Dict[str, Any]) -> Union[str, bool]:
    """
    Determines SSL verification setting based on config.yaml.

    Returns:
        Union[str, bool]:
            - Path to CA bundle (str) if ssl_verification is "ca_bundle" and certs are available
            - False if ssl_verification is "disabled"
            - True as fallback (use system certs)
    """
    ssl_verification = str((config.get("prometheus", {}) or {}).get("ssl_verification", "ca_bundle")).lower()

    if ssl_verification == "disabled":
        return False
    elif ssl_verification == "ca_bundle":
        return CA_BUNDLE or True
    else:
        return True


def _auth_headers() -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if PROMETHEUS_BEARER_TOKEN:
        headers["Authorization"] = f"Bearer {PROMETHEUS_BEARER_TOKEN}"
    return headers

# -----------------------------------------------
# Client
# -----------------------------------------------

class PrometheusClient:
    """
    Instant-query client for Prometheus.

    query() is the raw executor (one HTTP round trip). gather_samples() adds
    the poll-until-success loop, decoding and NaN filtering. The poll loop is
    the only retry layer: transport, URL and stream errors and non-2xx responses are retried,
    decode errors and empty results are not.
    """

    def __init__(
        self,
        query_url: str,
        headers: Optional[Dict[str, str]] = None,
        verify: Union[str, bool] = True,
        request_timeout: float = 60.0,
        poll_interval: timedelta = timedelta(seconds=30),
        poll_timeout: timedelta = timedelta(minutes=5),
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.query_url = query_url
        self.headers = dict(headers or {})
        self.verify = verify
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._transport = transport
        self._sleep = sleep
        self._monotonic = monotonic

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None, **overrides) -> "PrometheusClient":
        if config is None:
            config = load_config()
        poll_interval, poll_timeout = get_poll_settings(config)
        options = {
            "headers": _auth_headers(),
            "verify": get_ssl_verify_setting(config),
            "request_timeout": get_request_timeout(config),
            "poll_interval": poll_interval,
            "poll_timeout": poll_timeout,
        }
        options.update(overrides)
        return cls(resolve_query_url(config), **options)

    async def query(self, query: str, at_time: datetime) -> bytes:
        """Issue a single instant query and return the raw response body."""
        params = {"query": query, "time": format_query_time(at_time)}
        async with httpx.AsyncClient(verify=self.verify, transport=self._transport) as client:
            resp = await client.get(
                self.query_url, params=params, headers=self.headers, timeout=self.request_timeout
            )
            resp.raise_for_status()
            return resp.content

    async def gather_samples(
        self, query: str, at_time: datetime, ctx: Optional[Context] = None
    ) -> List[Sample]:
        """
        Fetch the instantaneous value of a query at a point in time.

        Args:
            query: PromQL expression.
            at_time: Evaluation timestamp; must not be zero.
            ctx: Optional FastMCP context for progress reporting.

        Returns:
            Decoded samples in response order, NaN values removed.

        Raises:
            InvalidArgumentError: If at_time is zero (no request is made).
            PrometheusQueryError: If every attempt failed until the poll timeout.
            SampleDecodeError: If the response could not be decoded.
        """
        if is_zero_time(at_time):
            raise InvalidArgumentError("query time can't be zero")

        interval_s = self.poll_interval.total_seconds()
        deadline = self._monotonic() + self.poll_timeout.total_seconds()
        attempt = 0
        while True:
            attempt += 1
            try:
                body = await self.query(query, at_time)
                break
            except QUERY_ERRORS as e:
                logger.warning("Prometheus query attempt %d failed: %s", attempt, e)
                if self._monotonic() + interval_s > deadline:
                    msg = f"query error: {e}"
                    if ctx:
                        await ctx.error(f"Prometheus query failed after {attempt} attempt(s): {e}")
                    raise PrometheusQueryError(msg) from e
                if ctx:
                    await ctx.warning(
                        f"Prometheus query attempt {attempt} failed: {e}. Waiting {interval_s:g}s before retry..."
                    )
                await self._sleep(interval_s)

        samples = decode_samples(body)
        return [s for s in samples if not math.isnan(s.value)]
