"""Tests for cluster classification and per-cluster statistics."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from slurm_dashboard.aggregators import cluster_status
from slurm_dashboard.slurmrestapi import client, types

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _node(**fields) -> types.RawNodeData:
    return types.RawNodeData.model_validate(fields)


def _job(state) -> types.RawJobData:
    return types.RawJobData.model_validate({"job_state": state})


@pytest.fixture
def mock_client() -> MagicMock:
    return MagicMock(spec=client.SlurmRestApiClient)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("fields", "expected"),
    [
        ({"hostname": "sol-gpu-01"}, "Sol"),
        ({"hostname": "cg-gpu12"}, "Sol"),
        ({"hostname": "phx-cpu-001"}, "Phoenix"),
        ({"hostname": "phoenix07"}, "Phoenix"),
        ({"hostname": "unknown-host"}, "Unknown"),
        ({"hostname": "unknown-host", "partitions": ["batch"]}, "Unknown"),
        ({"hostname": "c001", "partitions": ["general", "gpu-long"]}, "Sol"),
        ({"hostname": "c002", "partitions": ["phx-htc"]}, "Phoenix"),
        ({"name": "n1"}, "Unknown"),
    ],
)
def test_classify_node(fields, expected):
    assert cluster_status.classify_node(_node(**fields)) == expected


def test_hostname_takes_precedence_over_partitions():
    node = _node(hostname="phx-001", partitions=["gpu"])
    assert cluster_status.classify_node(node) == "Phoenix"


def test_sol_rule_checked_before_phoenix():
    node = _node(hostname="phx-gpu-01")
    assert cluster_status.classify_node(node) == "Sol"


# ---------------------------------------------------------------------------
# State histogram
# ---------------------------------------------------------------------------


def test_count_node_states_primary_and_drain_flag():
    nodes = [
        _node(state=["IDLE"]),
        _node(state=["MIXED", "DRAIN"]),
        _node(state=["allocated"]),
        _node(state=["DOWN", "NOT_RESPONDING"]),
        _node(state=["UNKNOWN"]),
        _node(state=["FUTURE", "NOT_RESPONDING"]),
        _node(state=["RESERVED"]),
        _node(state=[]),
    ]

    states = cluster_status.count_node_states(nodes)

    assert states.model_dump() == {
        "idle": 1,
        "mixed": 1,
        "allocated": 1,
        "down": 1,
        "drain": 1,
        "unknown": 2,
    }


def test_drain_only_counted_from_secondary_token():
    states = cluster_status.count_node_states([_node(state=["DRAIN"])])

    assert states.drain == 0
    assert states.idle == 0


# ---------------------------------------------------------------------------
# Utilization and jobs
# ---------------------------------------------------------------------------


def test_utilization_zero_capacity():
    assert cluster_status.calculate_utilization(0, 0) == 0


@pytest.mark.parametrize(
    ("total", "allocated", "expected"),
    [(4, 2, 50), (8, 1, 13), (200, 1, 1), (8, 8, 100)],
)
def test_utilization_rounds_half_up(total, allocated, expected):
    assert cluster_status.calculate_utilization(total, allocated) == expected


def test_count_jobs_ignores_other_states():
    jobs = [_job("RUNNING"), _job(["PENDING"]), _job("COMPLETED"), _job(None), _job("running")]

    counts = cluster_status.count_jobs(jobs)

    assert (counts.running, counts.pending) == (2, 1)


def test_jobs_distributed_by_node_share():
    nodes = [
        _node(hostname="sol-1"),
        _node(hostname="sol-2"),
        _node(hostname="sol-3"),
        _node(hostname="phx-1"),
    ]
    jobs = [_job("RUNNING")] * 10 + [_job("PENDING")] * 2

    response = cluster_status.build_cluster_status(nodes, jobs, now=NOW)
    by_name = {c.name: c for c in response.clusters}

    assert (by_name["Sol"].jobs.running, by_name["Sol"].jobs.pending) == (8, 2)
    assert (by_name["Phoenix"].jobs.running, by_name["Phoenix"].jobs.pending) == (3, 1)
    assert response.summary.total_jobs == 12


# ---------------------------------------------------------------------------
# build_cluster_status
# ---------------------------------------------------------------------------


def test_end_to_end_single_bucket():
    nodes = [
        _node(name="n1", state=["IDLE"], cpus=4, alloc_cpus=0),
        _node(name="n2", state=["ALLOCATED", "DRAIN"], cpus=4, alloc_cpus=4),
    ]
    jobs = [_job("RUNNING"), _job("PENDING")]

    response = cluster_status.build_cluster_status(nodes, jobs, now=NOW)

    assert len(response.clusters) == 1
    bucket = response.clusters[0]
    assert bucket.name == "Unknown"
    assert bucket.node_states.model_dump() == {
        "idle": 1,
        "mixed": 0,
        "allocated": 1,
        "down": 0,
        "drain": 1,
        "unknown": 0,
    }
    assert bucket.utilization == 50
    assert (bucket.jobs.running, bucket.jobs.pending) == (1, 1)


def test_clusters_sorted_and_summarized():
    nodes = [
        _node(hostname="sol-1", cpus=10, alloc_cpus=10, real_memory=100, alloc_memory=50),
        _node(hostname="phx-1", cpus=10, alloc_cpus=5),
        _node(hostname="other", cpus=0),
    ]

    response = cluster_status.build_cluster_status(nodes, [], now=NOW)

    assert [c.name for c in response.clusters] == ["Phoenix", "Sol", "Unknown"]
    assert response.summary.total_nodes == 3
    assert response.summary.total_jobs == 0
    # (50 + 100 + 0) / 3
    assert response.summary.average_utilization == 50


def test_empty_cluster_summary():
    response = cluster_status.build_cluster_status([], [], now=NOW)

    assert response.clusters == []
    assert response.summary.average_utilization == 0
    assert response.summary.total_nodes == 0


def test_response_uses_camel_case_and_iso_timestamp():
    nodes = [_node(hostname="sol-1", cpus=2, alloc_cpus=1, real_memory=10, alloc_memory=5)]

    response = cluster_status.build_cluster_status(nodes, [_job("RUNNING")], now=NOW)

    assert response.to_response() == {
        "timestamp": "2024-05-01T12:00:00.000Z",
        "clusters": [
            {
                "name": "Sol",
                "totalNodes": 1,
                "utilization": 50,
                "nodeStates": {
                    "idle": 0,
                    "mixed": 0,
                    "allocated": 0,
                    "down": 0,
                    "drain": 0,
                    "unknown": 0,
                },
                "jobs": {"running": 1, "pending": 0},
                "resources": {
                    "totalCpus": 2,
                    "allocatedCpus": 1,
                    "totalMemory": 10,
                    "allocatedMemory": 5,
                },
            },
        ],
        "summary": {"totalNodes": 1, "totalJobs": 1, "averageUtilization": 50},
    }


def test_naive_now_is_treated_as_utc():
    response = cluster_status.build_cluster_status([], [], now=datetime(2024, 5, 1, 12, 0))

    assert response.timestamp == "2024-05-01T12:00:00.000Z"


def test_job_with_unexpected_field_types_is_counted():
    jobs = [types.RawJobData.model_validate({"job_state": "RUNNING", "nodes": 5})]

    nodes = [_node(hostname="sol-1", cpus=2)]

    response = cluster_status.build_cluster_status(nodes, jobs, now=NOW)

    assert response.clusters[0].jobs.running == 1


# ---------------------------------------------------------------------------
# get_cluster_status
# ---------------------------------------------------------------------------


def test_get_cluster_status_fetches_live(mock_client):
    mock_client.get_nodes.return_value = [_node(hostname="sol-1", cpus=4, alloc_cpus=2)]
    mock_client.get_jobs.return_value = [_job("RUNNING")]

    response = asyncio.run(cluster_status.get_cluster_status(mock_client, now=NOW))

    mock_client.get_nodes.assert_awaited_once()
    mock_client.get_jobs.assert_awaited_once()
    assert response.clusters[0].utilization == 50


def test_get_cluster_status_propagates_upstream_failure(mock_client):
    mock_client.get_nodes.return_value = []
    mock_client.get_jobs.side_effect = httpx.ConnectError("refused")

    with pytest.raises(httpx.ConnectError):
        asyncio.run(cluster_status.get_cluster_status(mock_client, now=NOW))
