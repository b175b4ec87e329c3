"""Node listing backed by the freshness cache.

Fetches node records from the SLURM REST API, converts them to plain JSON
values and stores them in the shared :class:`~slurm_dashboard.cache.NodeCache`.
"""

import math
from datetime import date, datetime, timezone
from typing import Any

import structlog

from .. import slurmrestapi
from ..cache import CacheEntry, NodeCache

logger = structlog.get_logger(__name__)


def _to_jsonable(value: Any) -> Any:
    """Deep-copy a value into plain JSON types.

    Dates become epoch-millisecond integers (UTC midnight for plain dates),
    non-finite floats become ``None`` and unknown objects become strings.
    """
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        midnight = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        return int(midnight.timestamp() * 1000)
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_jsonable(v) for v in value]
    return str(value)


def serialize_node(raw: slurmrestapi.types.RawNodeData) -> dict[str, Any]:
    """Convert a validated node record, including extra fields, to a plain dict."""
    return _to_jsonable(raw.model_dump())


async def fetch(client: slurmrestapi.SlurmRestApiClient) -> list[dict[str, Any]]:
    """Fetch and serialize all nodes.

    Raises:
        httpx.HTTPError: If the HTTP request fails.
        SlurmApiError: If the API reports errors.
    """
    raw_nodes = await client.get_nodes()
    return [serialize_node(node) for node in raw_nodes]


async def list_nodes(
    client: slurmrestapi.SlurmRestApiClient,
    cache: NodeCache,
) -> CacheEntry:
    """Return the current node snapshot, refreshing the cache when stale.

    Never raises for upstream failures; an empty entry means "no data".
    """
    return await cache.get_or_refresh(lambda: fetch(client))


async def refresh_nodes(
    client: slurmrestapi.SlurmRestApiClient,
    cache: NodeCache,
) -> CacheEntry:
    """Invalidate the cache and fetch the node list again."""
    cache.invalidate()
    return await list_nodes(client, cache)


async def node_names(
    client: slurmrestapi.SlurmRestApiClient,
    cache: NodeCache,
) -> tuple[str, ...]:
    """Known node names, reusing a fresh cached snapshot when there is one."""
    if cache.is_fresh() and cache.peek().names:
        return cache.peek().names
    entry = await list_nodes(client, cache)
    return entry.names


def to_response(entry: CacheEntry) -> dict[str, Any]:
    """Shape a snapshot into the node listing response."""
    return {
        "nodes": list(entry.nodes),
        "last_update": {"number": entry.timestamp_ms},
    }
