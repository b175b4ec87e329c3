"""IPMI power telemetry aggregated across cluster nodes.

Prometheus deployments label IPMI exporters differently, so the node
identity label is discovered by trying an ordered list of query patterns,
each matching the known node names against one label. When none of them
returns data an unfiltered query is used and its series are reconciled
with the cluster by substring matching on label values.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import Field

from .. import prometheusapi, slurmrestapi
from ..cache import NodeCache
from ..prometheusapi.types import RangeSeries
from . import nodes
from ._common import CamelModel, round_half_up

logger = structlog.get_logger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)
DEFAULT_STEP = timedelta(minutes=15)
MAX_DATA_POINTS = 200

POWER_METRIC = "ipmi_power_watts"
POWER_SENSOR = "Pwr Consumption"
DCMI_POWER_METRIC = "ipmi_dcmi_power_consumption_watts"

# Labels checked when reporting which nodes appear in a result.
NODE_IDENTITY_LABELS = ("hostname", "instance", "node")


def promql_duration(interval: timedelta) -> str:
    """Format a timedelta as a PromQL duration (``15m``, ``1h``, ``90s``)."""
    seconds = max(int(interval.total_seconds()), 1)
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


@dataclass(frozen=True)
class QueryPattern:
    """Averaged power query matching node names against one label."""

    label: str

    def render(self, node_names: tuple[str, ...], step: timedelta) -> str:
        """Build the PromQL expression for this label.

        Args:
            node_names: Names joined into a regex alternation, unescaped.
            step: Averaging window, also used as the query step.

        Returns:
            An ``avg_over_time`` expression over the IPMI power sensor.
        """
        selector = (
            f'{POWER_METRIC}{{name="{POWER_SENSOR}", '
            f'{self.label}=~"{"|".join(node_names)}"}}'
        )
        return f"avg_over_time({selector}[{promql_duration(step)}])"


# Tried in order; the first pattern that returns any series wins.
NODE_QUERY_PATTERNS: tuple[QueryPattern, ...] = (
    QueryPattern("hostname"),
    QueryPattern("instance"),
    QueryPattern("node"),
)


def fallback_query(step: timedelta) -> str:
    """Unfiltered query over both the IPMI sensor and the DCMI metric."""
    return (
        f'avg_over_time(({POWER_METRIC}{{name="{POWER_SENSOR}"}} '
        f"or {DCMI_POWER_METRIC})[{promql_duration(step)}:])"
    )


class PowerPoint(CamelModel):
    """One bucketed timestamp: total and per-node average watts."""

    time: int
    watts: int
    average_watts: int
    nodes_reporting: int


class PowerSummary(CamelModel):
    """Latest-point figures plus flags describing how the data was found.

    Optional flags are omitted from the response when unset.
    """

    current_total: int = 0
    current_average: int = 0
    nodes_reporting: int = 0
    no_prometheus_data: bool | None = None
    cluster_size: int | None = None
    unfiltered_fallback: bool | None = None
    cluster_node_matches: int | None = None


class PowerReport(CamelModel):
    """Power series response.

    ``status`` is reported in the body; the HTTP status is 200 either way.
    """

    status: int = 200
    data: list[PowerPoint] = []
    summary: PowerSummary = Field(default_factory=PowerSummary)

    @classmethod
    def no_data(cls, status: int = 200) -> "PowerReport":
        return cls(status=status, data=[], summary=PowerSummary(no_prometheus_data=True))


def bucket_samples(
    series: list[RangeSeries],
    max_points: int = MAX_DATA_POINTS,
) -> list[PowerPoint]:
    """Sum samples that share a timestamp across series.

    Args:
        series: Series whose samples are bucketed by exact timestamp.
        max_points: Number of most recent points to keep.

    Returns:
        Points in time order. ``time`` is in epoch milliseconds.
    """
    buckets: dict[float, list[float]] = {}
    for s in series:
        for sample in s.values:
            bucket = buckets.setdefault(sample.time, [0.0, 0])
            bucket[0] += sample.value
            bucket[1] += 1

    points = [
        PowerPoint(
            time=round_half_up(timestamp * 1000),
            watts=round_half_up(total),
            average_watts=round_half_up(total / count) if count else 0,
            nodes_reporting=count,
        )
        for timestamp, (total, count) in sorted(buckets.items())
    ]
    if max_points <= 0:
        return []
    return points[-max_points:]


def _belongs_to_cluster(series: RangeSeries, node_names: tuple[str, ...]) -> bool:
    return any(
        name in value for value in series.label_values() for name in node_names
    )


def _identities_in_results(series: list[RangeSeries]) -> set[str]:
    identities = set()
    for s in series:
        for label in NODE_IDENTITY_LABELS:
            if value := s.metric.get(label):
                identities.add(value)
    return identities


async def _query_patterns(
    prometheus: prometheusapi.PrometheusClient,
    node_names: tuple[str, ...],
    start: datetime,
    end: datetime,
    step: timedelta,
) -> list[RangeSeries]:
    """Run the identity patterns in order, returning the first non-empty result."""
    for pattern in NODE_QUERY_PATTERNS:
        query = pattern.render(node_names, step)
        logger.debug("Trying power query pattern", label=pattern.label)
        try:
            result = await prometheus.query_range(query, start, end, step.total_seconds())
        except Exception:
            logger.warning(
                "Power query pattern failed",
                label=pattern.label,
                exc_info=True,
            )
            continue
        if result:
            logger.info(
                "Power query pattern matched",
                label=pattern.label,
                series=len(result),
            )
            return result
    return []


async def get_power_series(
    prometheus: prometheusapi.PrometheusClient | None,
    client: slurmrestapi.SlurmRestApiClient,
    cache: NodeCache,
    window: timedelta = DEFAULT_WINDOW,
    step: timedelta = DEFAULT_STEP,
    now: datetime | None = None,
) -> PowerReport:
    """Build the cluster power time series.

    Args:
        prometheus: Prometheus client, or None when no endpoint is configured.
        client: SLURM client used if the node cache needs refreshing.
        cache: Shared node cache.
        window: How far back the series reaches.
        step: Resolution of the series and width of the averaging window.
        now: End of the window; defaults to the current time.

    Returns:
        A report whose summary carries ``noPrometheusData`` when no telemetry
        was found. Upstream failures never raise.
    """
    if prometheus is None:
        return PowerReport.no_data(status=404)

    cluster_nodes = await nodes.node_names(client, cache)
    if not cluster_nodes:
        logger.warning("No cluster nodes found, proceeding with unfiltered query")

    end = now or datetime.now(timezone.utc)
    start = end - window

    result: list[RangeSeries] = []
    if cluster_nodes:
        result = await _query_patterns(prometheus, cluster_nodes, start, end, step)

    unfiltered_fallback = False
    if not result:
        logger.info("No results with filtered queries, trying unfiltered query")
        unfiltered_fallback = True
        try:
            result = await prometheus.query_range(
                fallback_query(step), start, end, step.total_seconds()
            )
        except Exception:
            logger.exception("Unfiltered power query failed")
            result = []

    if not result:
        return PowerReport.no_data()

    identities = _identities_in_results(result)
    logger.debug("Nodes included in power results", nodes=sorted(identities))

    cluster_node_matches = 0
    if unfiltered_fallback and cluster_nodes:
        cluster_node_matches = sum(
            1 for identity in identities if any(name in identity for name in cluster_nodes)
        )
        logger.info(
            "Matched unfiltered power series to cluster",
            matched=cluster_node_matches,
            total=len(identities),
        )
        result = [s for s in result if _belongs_to_cluster(s, cluster_nodes)]

    points = bucket_samples(result)
    if not points:
        return PowerReport.no_data()

    last = points[-1]
    return PowerReport(
        status=200,
        data=points,
        summary=PowerSummary(
            current_total=last.watts,
            current_average=last.average_watts,
            nodes_reporting=last.nodes_reporting,
            cluster_size=len(cluster_nodes),
            unfiltered_fallback=unfiltered_fallback,
            cluster_node_matches=cluster_node_matches,
        ),
    )
