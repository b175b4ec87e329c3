"""Time-boxed cache for the cluster node list.

Holds a single entry: the last successfully fetched node snapshot. Entries
are immutable and replaced wholesale, so concurrent refreshes on the event
loop can race without corrupting the cache (last writer wins).
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL = 120.0

NodeFetcher = Callable[[], Awaitable[list[dict[str, Any]]]]


@dataclass(frozen=True)
class CacheEntry:
    """A node list snapshot.

    Attributes:
        timestamp: Unix time (seconds) the snapshot was taken.
        nodes: Serialized node records.
        names: Node names in first-seen order, without blanks or duplicates.
    """

    timestamp: float
    nodes: tuple[dict[str, Any], ...] = ()
    names: tuple[str, ...] = ()

    @classmethod
    def from_nodes(cls, nodes: list[dict[str, Any]], timestamp: float) -> "CacheEntry":
        names = dict.fromkeys(
            node["name"] for node in nodes if isinstance(node.get("name"), str) and node["name"]
        )
        return cls(timestamp=timestamp, nodes=tuple(nodes), names=tuple(names))

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp * 1000)


class NodeCache:
    """Freshness cache for the node list.

    An entry younger than ``ttl`` seconds with at least one node is served
    without calling the fetcher. Refresh failures never propagate: the
    caller gets an empty entry and the stored one is kept.
    """

    def __init__(self, ttl: float = DEFAULT_TTL):
        """Initialize the cache.

        Args:
            ttl: Seconds a snapshot stays fresh.
        """
        self._ttl = ttl
        self._entry = CacheEntry(timestamp=0.0)
        self.refresh_errors = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    def peek(self) -> CacheEntry:
        """Return the stored entry without refreshing it."""
        return self._entry

    def is_fresh(self, now: float | None = None) -> bool:
        """Whether the stored entry can be served without fetching.

        An empty entry is never fresh, whatever its age.
        """
        entry = self._entry
        now = time.time() if now is None else now
        return bool(entry.nodes) and now - entry.timestamp < self._ttl

    def invalidate(self) -> None:
        """Force the next ``get_or_refresh`` to fetch."""
        entry = self._entry
        self._entry = CacheEntry(timestamp=0.0, nodes=entry.nodes, names=entry.names)
        logger.debug("Node cache invalidated")

    async def get_or_refresh(self, fetcher: NodeFetcher) -> CacheEntry:
        """Return the cached snapshot, refreshing it first if stale.

        Args:
            fetcher: Coroutine function returning serialized node records.

        Returns:
            The fresh cached entry, a newly fetched entry, or an empty entry
            stamped with the current time if fetching failed.
        """
        now = time.time()
        entry = self._entry
        if entry.nodes and now - entry.timestamp < self._ttl:
            logger.debug("Using cached node list", age_seconds=round(now - entry.timestamp, 2))
            return entry

        try:
            nodes = await fetcher()
        except Exception:
            self.refresh_errors += 1
            logger.exception("Failed to refresh node list")
            return CacheEntry(timestamp=now)

        fresh = CacheEntry.from_nodes(nodes, timestamp=now)
        self._entry = fresh
        logger.info(
            "Refreshed node list",
            nodes=len(fresh.nodes),
            names=len(fresh.names),
            duration_seconds=round(time.time() - now, 3),
        )
        return fresh
