from __future__ import annotations

import re
from typing import Any

import httpx

from .api_models import MetricProvider, PrometheusMetric, WebMetric

_PATH_TOKEN_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


class MetricProviderError(Exception):
    """A measurement could not be taken."""


def json_path(data: Any, path: str) -> Any:
    """Resolve a dotted path such as ``$.data.items[0].value``."""
    expr = path.strip()
    if expr.startswith("$"):
        expr = expr[1:]
    expr = expr.lstrip(".")
    current = data
    for key, index in _PATH_TOKEN_RE.findall(expr):
        try:
            if index:
                current = current[int(index)]
            else:
                current = current[key]
        except (KeyError, IndexError, TypeError):
            raise MetricProviderError(f"jsonPath {path!r} did not match the response") from None
    return current


def measure_web(metric: WebMetric, timeout_s: float) -> Any:
    """Call a JSON endpoint and extract the value at ``jsonPath``."""
    try:
        with httpx.Client(timeout=metric.timeout_seconds or timeout_s, follow_redirects=False) as client:
            resp = client.request(metric.method, metric.url, headers=metric.headers, content=metric.body)
    except httpx.TimeoutException:
        raise MetricProviderError("No response (timeout)") from None
    except httpx.HTTPError as e:
        raise MetricProviderError(f"Error: {type(e).__name__}: {e}") from None
    if resp.status_code != 200:
        raise MetricProviderError(f"HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError:
        raise MetricProviderError("Invalid JSON") from None
    return json_path(data, metric.json_path) if metric.json_path else data


def measure_prometheus(metric: PrometheusMetric, timeout_s: float) -> float:
    """Run an instant query and return the first sample as a float."""
    url = f"{metric.address.rstrip('/')}/api/v1/query"
    try:
        with httpx.Client(timeout=metric.timeout_seconds or timeout_s, follow_redirects=False) as client:
            resp = client.get(url, params={"query": metric.query})
        data = resp.json()
    except httpx.TimeoutException:
        raise MetricProviderError("No response (timeout)") from None
    except httpx.HTTPError as e:
        raise MetricProviderError(f"Error: {type(e).__name__}: {e}") from None
    except ValueError:
        raise MetricProviderError("Invalid JSON") from None

    if not isinstance(data, dict) or data.get("status") != "success":
        err = data.get("error") if isinstance(data, dict) else None
        raise MetricProviderError(f"Query failed: {err or f'HTTP {resp.status_code}'}")
    result = data.get("data", {})
    kind = result.get("resultType")
    try:
        if kind == "vector":
            samples = result.get("result") or []
            if not samples:
                raise MetricProviderError("Query returned no samples")
            return float(samples[0]["value"][1])
        if kind == "scalar":
            return float(result["result"][1])
    except (KeyError, IndexError, TypeError, ValueError):
        raise MetricProviderError("Unexpected query result shape") from None
    raise MetricProviderError(f"Unsupported resultType {kind!r}")


def measure(provider: MetricProvider, timeout_s: float) -> Any:
    if provider.web is not None:
        return measure_web(provider.web, timeout_s)
    if provider.prometheus is not None:
        return measure_prometheus(provider.prometheus, timeout_s)
    raise MetricProviderError("metric has no provider")
