"""Prometheus collector for the dashboard's own node cache health."""

import time
from collections.abc import Iterator

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .cache import NodeCache


class NodeCacheCollector(Collector):
    """Exports node cache age, size and refresh errors on each scrape.

    Reads the cache without refreshing it, so scraping never reaches the
    SLURM REST API.
    """

    def __init__(self, cache: NodeCache):
        self._cache = cache

    def collect(self) -> Iterator[Metric]:
        entry = self._cache.peek()

        # -1 indicates the cache has never been filled or was invalidated
        age = time.time() - entry.timestamp if entry.timestamp > 0 else -1.0
        cache_age = GaugeMetricFamily(
            "slurm_dashboard_node_cache_age_seconds",
            "seconds since the node list was fetched, -1 if never fetched",
        )
        cache_age.add_metric([], age)
        yield cache_age

        cached_nodes = GaugeMetricFamily(
            "slurm_dashboard_node_cache_nodes",
            "nodes held in the node cache",
        )
        cached_nodes.add_metric([], len(entry.nodes))
        yield cached_nodes

        refresh_errors = CounterMetricFamily(
            "slurm_dashboard_node_cache_refresh_error",
            "failed node list refreshes",
        )
        refresh_errors.add_metric([], self._cache.refresh_errors)
        yield refresh_errors
