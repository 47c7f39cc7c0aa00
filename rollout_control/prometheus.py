import asyncio
import math

import requests

from .errors import MetricsUnavailable
from .interfaces import MetricsSource
from .logger import get_logger

DEFAULT_QUERIES = {
    "response_time": (
        'histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket'
        '{{namespace="{namespace}",service="{service}"}}[5m])) by (le)) * 1000'
    ),
    "error_rate": (
        'sum(rate(http_requests_total{{namespace="{namespace}",service="{service}",status=~"5.."}}[5m]))'
        ' / sum(rate(http_requests_total{{namespace="{namespace}",service="{service}"}}[5m])) * 100'
    ),
    "throughput": 'sum(rate(http_requests_total{{namespace="{namespace}",service="{service}"}}[5m]))',
}


class PrometheusMetricsSource(MetricsSource):
    """Instant queries against the Prometheus HTTP API"""

    def __init__(self, base_url, session=None, timeout_s=10.0, queries=None, business_queries=None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.queries = dict(DEFAULT_QUERIES)
        self.queries.update(queries or {})
        self.business_queries = dict(business_queries or {})
        self.logger = get_logger("prometheus")

    async def query(self, promql):
        return await asyncio.to_thread(self._query, promql)

    def _query(self, promql):
        try:
            response = self.session.get(f"{self.base_url}/api/v1/query", params={"query": promql},
                                        timeout=self.timeout_s)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise MetricsUnavailable(f"Prometheus query failed: {e}")

        if payload.get("status") != "success":
            raise MetricsUnavailable(f"Prometheus query failed: {payload.get('error', 'unknown error')}")
        result = (payload.get("data") or {}).get("result") or []
        if not result:
            raise MetricsUnavailable(f"No data for query: {promql}")
        value = float(result[0]["value"][1])
        if math.isnan(value):
            raise MetricsUnavailable(f"Query returned NaN: {promql}")
        self.logger.debug(f"{promql} = {value}")
        return value

    def _render(self, template, target):
        return template.format(namespace=target.namespace, service=target.service_name)

    async def sample_response_time(self, target):
        return await self.query(self._render(self.queries["response_time"], target))

    async def sample_error_rate(self, target):
        return await self.query(self._render(self.queries["error_rate"], target))

    async def sample_throughput(self, target):
        return await self.query(self._render(self.queries["throughput"], target))

    async def sample_business_metric(self, target, name):
        template = self.business_queries.get(name)
        if template is None:
            return None
        return await self.query(self._render(template, target))
