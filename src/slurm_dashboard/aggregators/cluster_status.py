"""Per-cluster status derived from live SLURM node and job data.

Nodes are assigned to clusters by substring heuristics on hostnames and
partitions. Job counts per cluster are approximated by distributing the
global running/pending counts in proportion to each cluster's node count;
the jobs API does not tie jobs to clusters.
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime

import structlog

from .. import slurmrestapi
from ..slurmrestapi.types import RawJobData, RawNodeData
from ._common import CamelModel, iso_timestamp, round_half_up

logger = structlog.get_logger(__name__)

UNKNOWN_CLUSTER = "Unknown"

# Checked in order. A substring like "sol" can match unrelated hostnames.
CLUSTER_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Sol", ("sol", "gpu")),
    ("Phoenix", ("phx", "phoenix")),
)


class NodeStates(CamelModel):
    idle: int = 0
    mixed: int = 0
    allocated: int = 0
    down: int = 0
    drain: int = 0
    unknown: int = 0


class JobCounts(CamelModel):
    running: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.running + self.pending


class ClusterResources(CamelModel):
    total_cpus: int = 0
    allocated_cpus: int = 0
    total_memory: int = 0
    allocated_memory: int = 0


class ClusterStats(CamelModel):
    name: str
    total_nodes: int
    utilization: int
    node_states: NodeStates
    jobs: JobCounts
    resources: ClusterResources


class ClusterSummary(CamelModel):
    total_nodes: int = 0
    total_jobs: int = 0
    average_utilization: int = 0


class ClusterStatusResponse(CamelModel):
    timestamp: str
    clusters: list[ClusterStats]
    summary: ClusterSummary


def _match_rule(values: Iterable[str]) -> str | None:
    values = list(values)
    for cluster, substrings in CLUSTER_RULES:
        if any(sub in value for value in values for sub in substrings):
            return cluster
    return None


def classify_node(node: RawNodeData) -> str:
    """Name of the cluster a node belongs to.

    The hostname is checked against every rule before partitions are.
    """
    if node.hostname and (cluster := _match_rule([node.hostname])):
        return cluster
    if node.partitions and (cluster := _match_rule(node.partitions)):
        return cluster
    return UNKNOWN_CLUSTER


def group_nodes_by_cluster(nodes: list[RawNodeData]) -> dict[str, list[RawNodeData]]:
    """Group nodes by :func:`classify_node`, keeping input order within a group.

    Args:
        nodes: Validated node records.

    Returns:
        Mapping of cluster name to its nodes. Clusters without nodes are absent.
    """
    clusters: dict[str, list[RawNodeData]] = {}
    for node in nodes:
        clusters.setdefault(classify_node(node), []).append(node)
    return clusters


def count_node_states(nodes: list[RawNodeData]) -> NodeStates:
    """State histogram. Drain is counted on top of the primary state."""
    states = NodeStates()
    for node in nodes:
        primary = node.primary_state
        secondary = node.secondary_state

        if primary == "IDLE":
            states.idle += 1
        elif primary == "MIXED":
            states.mixed += 1
        elif primary == "ALLOCATED":
            states.allocated += 1
        elif primary == "DOWN":
            states.down += 1
        elif primary == "UNKNOWN" or secondary == "NOT_RESPONDING":
            states.unknown += 1

        if secondary == "DRAIN":
            states.drain += 1
    return states


def calculate_utilization(total_cpus: int, allocated_cpus: int) -> int:
    """CPU utilization as a whole percentage.

    Args:
        total_cpus: CPUs across the cluster.
        allocated_cpus: CPUs currently allocated.

    Returns:
        ``allocated / total * 100`` rounded half up, or 0 when there are no CPUs.
    """
    if total_cpus == 0:
        return 0
    return round_half_up(allocated_cpus / total_cpus * 100)


def count_jobs(jobs: list[RawJobData]) -> JobCounts:
    """Running and pending totals; other states are ignored."""
    counts = JobCounts()
    for job in jobs:
        state = job.primary_state
        if state == "RUNNING":
            counts.running += 1
        elif state == "PENDING":
            counts.pending += 1
    return counts


def build_cluster_status(
    nodes: list[RawNodeData],
    jobs: list[RawJobData],
    now: datetime | None = None,
) -> ClusterStatusResponse:
    """Aggregate node and job snapshots into per-cluster statistics."""
    job_counts = count_jobs(jobs)
    total_node_count = len(nodes)

    clusters = []
    for name, members in group_nodes_by_cluster(nodes).items():
        resources = ClusterResources(
            total_cpus=sum(n.cpus for n in members),
            allocated_cpus=sum(n.alloc_cpus for n in members),
            total_memory=sum(n.real_memory for n in members),
            allocated_memory=sum(n.alloc_memory for n in members),
        )
        share = len(members) / total_node_count
        clusters.append(
            ClusterStats(
                name=name,
                total_nodes=len(members),
                utilization=calculate_utilization(
                    resources.total_cpus, resources.allocated_cpus
                ),
                node_states=count_node_states(members),
                jobs=JobCounts(
                    running=round_half_up(job_counts.running * share),
                    pending=round_half_up(job_counts.pending * share),
                ),
                resources=resources,
            )
        )

    clusters.sort(key=lambda c: c.name)
    average_utilization = (
        round_half_up(sum(c.utilization for c in clusters) / len(clusters))
        if clusters
        else 0
    )

    return ClusterStatusResponse(
        timestamp=iso_timestamp(now),
        clusters=clusters,
        summary=ClusterSummary(
            total_nodes=sum(c.total_nodes for c in clusters),
            total_jobs=job_counts.total,
            average_utilization=average_utilization,
        ),
    )


async def get_cluster_status(
    client: slurmrestapi.SlurmRestApiClient,
    now: datetime | None = None,
) -> ClusterStatusResponse:
    """Fetch live nodes and jobs concurrently and aggregate them.

    Raises:
        httpx.HTTPError: If either request fails.
        SlurmApiError: If the API reports errors.
    """
    nodes, jobs = await asyncio.gather(client.get_nodes(), client.get_jobs())
    logger.debug("Fetched cluster data", nodes=len(nodes), jobs=len(jobs))
    return build_cluster_status(nodes, jobs, now=now)
