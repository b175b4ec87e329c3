"""Prometheus query API client package.

Exports:
    PrometheusClient: Async client for range queries.
    PrometheusQueryError: Raised on non-success query responses.
    types: Module containing Pydantic models for query results.
"""

from . import types
from .client import DEFAULT_TIMEOUT, PrometheusClient, PrometheusQueryError

__all__ = [
    "DEFAULT_TIMEOUT",
    "PrometheusClient",
    "PrometheusQueryError",
    "types",
]
