"""
Clustering coordinator: keeps a semantic clustering of stored memories fresh.

Clusters are built once right after the runtime's first successful
initialization and then refreshed at most every ``refresh_interval`` seconds
(five minutes by default) as requests come in.

A failed build switches clustering off. With the default ``retry_after`` of
0 it stays off for the lifetime of the runtime; a positive ``retry_after``
lets the next refresh attempt run once that many seconds have passed since
the failure.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from voxmind.memory.engine import ClusteringSettings, MemoryCluster, MemoryEngine

logger = structlog.get_logger(__name__)


@dataclass
class ClusteringState:
    clusters: list[MemoryCluster] = field(default_factory=list)
    last_update: float = 0.0
    enabled: bool = True
    disabled_at: Optional[float] = None
    last_error: Optional[str] = None


class ClusteringCoordinator:
    """Owns ``ClusteringState`` and decides when the engine should re-cluster."""

    def __init__(
        self,
        engine: Optional[MemoryEngine],
        settings: Optional[ClusteringSettings] = None,
        *,
        enabled: bool = True,
        refresh_interval: float = 300.0,
        retry_after: float = 0.0,
    ):
        self._engine = engine
        self._settings = settings or ClusteringSettings()
        self._refresh_interval = refresh_interval
        self._retry_after = retry_after
        self.state = ClusteringState(enabled=enabled)

    def bind(self, engine: Optional[MemoryEngine]) -> None:
        self._engine = engine

    @property
    def enabled(self) -> bool:
        return self.state.enabled

    @property
    def clusters(self) -> list[MemoryCluster]:
        return self.state.clusters

    @property
    def last_update(self) -> float:
        return self.state.last_update

    async def bootstrap(self, now: Optional[float] = None) -> bool:
        """Initial build, run once after startup. Returns True on success."""
        if not self.state.enabled or self._engine is None:
            return False
        return await self._build(time.time() if now is None else now, reason="bootstrap")

    async def maybe_refresh(self, now: Optional[float] = None) -> bool:
        """Rebuild if enabled and the refresh interval has elapsed.

        Returns True only when a rebuild ran and succeeded.
        """
        now = time.time() if now is None else now
        self._maybe_reenable(now)
        if not self.state.enabled or self._engine is None:
            return False
        if now - self.state.last_update < self._refresh_interval:
            return False
        return await self._build(now, reason="refresh")

    async def rebuild(self) -> list[MemoryCluster]:
        """Explicit rebuild, bypassing the rate limit.

        Errors propagate to the caller and do not touch the enabled latch.
        """
        if self._engine is None:
            raise RuntimeError("No memory engine bound")
        clusters = await self._engine.create_clusters(self._settings)
        self.state.clusters = list(clusters)
        self.state.last_update = time.time()
        logger.info("clustering.rebuilt", clusters=len(clusters))
        return self.state.clusters

    async def related(self, embedding: list[float], k: int = 3) -> list[MemoryCluster]:
        if self._engine is None or not self.state.clusters:
            return []
        return await self._engine.find_related_clusters(embedding, self.state.clusters, k)

    async def _build(self, now: float, *, reason: str) -> bool:
        try:
            clusters = await self._engine.create_clusters(self._settings)
        except Exception as exc:
            self.state.enabled = False
            self.state.disabled_at = now
            self.state.last_error = str(exc)
            logger.error(
                "clustering.disabled",
                reason=reason,
                error=str(exc),
                retry_after=self._retry_after or None,
            )
            return False

        self.state.clusters = list(clusters)
        self.state.last_update = now
        logger.info("clustering.updated", reason=reason, clusters=len(clusters))
        return True

    def _maybe_reenable(self, now: float) -> None:
        if self.state.enabled or self._retry_after <= 0 or self.state.disabled_at is None:
            return
        if now - self.state.disabled_at >= self._retry_after:
            self.state.enabled = True
            self.state.disabled_at = None
            logger.info("clustering.reenabled", after_seconds=self._retry_after)

    def reset(self) -> None:
        """Forget clusters; the enabled latch is left as is."""
        self.state.clusters = []
        self.state.last_update = 0.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "enabled": self.state.enabled,
            "cluster_count": len(self.state.clusters),
            "last_update": self.state.last_update,
            "last_error": self.state.last_error,
            "themes": [c.theme for c in self.state.clusters],
        }
