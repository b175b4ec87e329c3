"""Tests for the Prometheus range query client and series parsing."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from slurm_dashboard.prometheusapi import client, types

END = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
START = END - timedelta(hours=1)


def _query(handler, query: str = "up") -> list[types.RangeSeries]:
    async def go():
        async with client.PrometheusClient(
            "http://prometheus:9090/",
            transport=httpx.MockTransport(handler),
        ) as prom:
            return await prom.query_range(query, START, END, 900)

    return asyncio.run(go())


def _matrix(*result: dict) -> dict:
    return {"status": "success", "data": {"resultType": "matrix", "result": list(result)}}


def test_query_range_sends_window_and_step():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_matrix())

    _query(handler, 'ipmi_power_watts{name="Pwr Consumption"}')

    params = seen[0].url.params
    assert seen[0].url.path == "/api/v1/query_range"
    assert params["query"] == 'ipmi_power_watts{name="Pwr Consumption"}'
    assert float(params["start"]) == START.timestamp()
    assert float(params["end"]) == END.timestamp()
    assert float(params["step"]) == 900


def test_query_range_parses_series():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_matrix(
                {
                    "metric": {"hostname": "n1", "name": "Pwr Consumption"},
                    "values": [[1714564800, "250.5"], [1714565700, "260"]],
                },
            ),
        )

    series = _query(handler)

    assert len(series) == 1
    assert series[0].metric["hostname"] == "n1"
    assert [(s.time, s.value) for s in series[0].values] == [
        (1714564800.0, 250.5),
        (1714565700.0, 260.0),
    ]


def test_query_range_empty_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_matrix())

    assert _query(handler) == []


def test_query_range_error_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"status": "error", "errorType": "bad_data", "error": "parse error"},
        )

    with pytest.raises(client.PrometheusQueryError, match="parse error"):
        _query(handler)


def test_query_range_http_failure_propagates():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(httpx.HTTPStatusError):
        _query(handler)


def test_series_drops_nan_and_malformed_samples():
    series = types.RangeSeries.model_validate(
        {
            "metric": {"instance": "n1:9290"},
            "values": [[1, "NaN"], [2, "+Inf"], [3, "oops"], ["bad"], [4, "12"]],
        },
    )

    assert [(s.time, s.value) for s in series.values] == [(4.0, 12.0)]


def test_series_tolerates_missing_fields():
    series = types.RangeSeries.model_validate({})

    assert series.metric == {}
    assert series.values == []
