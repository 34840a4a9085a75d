"""
Instant queries against the Prometheus HTTP API.

Every way a query can go wrong has its own exception, so callers can tell
"no data yet" (NoResultsError) apart from "backend down"
(PrometheusUnreachableError) apart from "query is ambiguous"
(AmbiguousResultError).
"""

import logging
import threading

import requests

logger = logging.getLogger(__name__)

QUERY_PATH = '/api/v1/query'
QUERY_TIMEOUT = 10  # seconds


class PrometheusError(Exception):
    """Base class for everything a query can raise."""


class PrometheusUnreachableError(PrometheusError):
    """The HTTP request itself failed: refused, timed out, DNS, etc."""


class PrometheusHTTPError(PrometheusError):
    def __init__(self, status_code, body):
        super().__init__(f"prometheus returned HTTP {status_code}: {body}")
        self.status_code = status_code


class PrometheusQueryError(PrometheusError):
    """Prometheus answered, but with status other than 'success'."""


class MalformedResponseError(PrometheusError):
    pass


class NoResultsError(PrometheusError):
    pass


class AmbiguousResultError(PrometheusError):
    def __init__(self, count, query):
        super().__init__(f"expected 1 result, got {count} for query: {query}")
        self.count = count


class PrometheusClient:
    """Stateless apart from its base URL and HTTP session, safe to share between threads."""

    def __init__(self, base_url, timeout=QUERY_TIMEOUT, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def query(self, promql):
        """Run an instant query that must return exactly one sample, and return its value."""
        results = self._query_raw(promql)
        if not results:
            raise NoResultsError(f"no results for query: {promql}")
        if len(results) > 1:
            raise AmbiguousResultError(len(results), promql)
        return _parse_value(results[0])

    def query_multi(self, promql, label_name):
        """Run an instant query and return {sample[label_name]: value} for every sample."""
        values = {}
        for result in self._query_raw(promql):
            key = result.get('metric', {}).get(label_name, '')
            values[key] = _parse_value(result)
        return values

    def _query_raw(self, promql):
        logger.debug(f"Querying {self.base_url}: {promql}")
        try:
            response = self.session.get(
                self.base_url + QUERY_PATH,
                params={'query': promql},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PrometheusUnreachableError(f"querying prometheus at {self.base_url}: {e}") from e

        if response.status_code != 200:
            raise PrometheusHTTPError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"decoding response: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedResponseError("response is not a JSON object")

        if payload.get('status') != 'success':
            raise PrometheusQueryError(f"prometheus query failed: {payload.get('error', 'unknown error')}")

        results = (payload.get('data') or {}).get('result')
        if not isinstance(results, list):
            raise MalformedResponseError("response has no result list")
        return results


def _parse_value(result):
    # Instant vectors come back as {"metric": {...}, "value": [<timestamp>, "<value>"]}
    try:
        raw = result['value'][1]
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedResponseError(f"sample has no value: {result}") from e
    if not isinstance(raw, str):
        raise MalformedResponseError(f"value is not a string: {raw!r}")
    try:
        return float(raw)
    except ValueError as e:
        raise MalformedResponseError(f"value is not a number: {raw!r}") from e


class PrometheusClientCache:
    """Hands out one PrometheusClient per URL, shared by all reconcile workers."""

    def __init__(self, client_factory=PrometheusClient):
        self._client_factory = client_factory
        self._clients = {}
        self._lock = threading.Lock()

    def get(self, url):
        with self._lock:
            client = self._clients.get(url)
            if client is None:
                logger.info(f"Creating Prometheus client for {url}")
                client = self._client_factory(url)
                self._clients[url] = client
            return client

    def __len__(self):
        with self._lock:
            return len(self._clients)
