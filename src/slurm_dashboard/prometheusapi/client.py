"""Prometheus HTTP API client.

Async client for range queries against ``/api/v1/query_range``. Results are
validated into :class:`RangeSeries` objects.
"""

import time
from datetime import datetime

import httpx
import structlog

from .types import RangeSeries

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


class PrometheusQueryError(RuntimeError):
    """Raised when Prometheus answers with a non-success status."""


class PrometheusClient:
    """Async client for the Prometheus query API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def query_range(
        self,
        query: str,
        start: datetime,
        end: datetime,
        step: float,
    ) -> list[RangeSeries]:
        """Run a PromQL range query.

        Args:
            query: PromQL expression.
            start: Start of the evaluation window.
            end: End of the evaluation window.
            step: Resolution step in seconds.

        Returns:
            Series from the ``matrix`` result, possibly empty.

        Raises:
            httpx.HTTPError: If the HTTP request fails.
            PrometheusQueryError: If Prometheus reports a failed query.
        """
        params = {
            "query": query,
            "start": start.timestamp(),
            "end": end.timestamp(),
            "step": step,
        }
        start_time = time.time()
        logger.debug("Running range query", query=query, step=step)

        response = await self.client.get("/api/v1/query_range", params=params)
        response.raise_for_status()
        body = response.json()

        if not isinstance(body, dict) or body.get("status") != "success":
            error = body.get("error", "unknown error") if isinstance(body, dict) else body
            msg = f"Prometheus query failed: {error}"
            raise PrometheusQueryError(msg)

        result = (body.get("data") or {}).get("result") or []
        series = [
            RangeSeries.model_validate(item) for item in result if isinstance(item, dict)
        ]
        logger.debug(
            "Range query completed",
            series=len(series),
            duration_seconds=round(time.time() - start_time, 3),
        )
        return series
