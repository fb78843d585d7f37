"""
Memory engine contract.

The agent core does not know how knowledge is extracted, embedded or
clustered. It talks to a memory engine through the async interface below and
treats every call as fallible. ``GraphMemoryEngine`` in ``graph.py`` is the
in-process default; any other store can be bound by implementing this class.
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from voxmind.types import ConversationMessage, GraphContext


@dataclass
class MemoryNode:
    """An entity or text chunk stored in the knowledge graph."""

    label: str
    kind: str = "entity"                 # "entity" (domain graph) or "chunk" (lexical graph)
    content: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    embedding: Optional[list[float]] = None
    properties: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @property
    def name(self) -> str:
        return self.label


@dataclass
class MemoryRelationship:
    source_id: str
    target_id: str
    type: str                            # "mentions", "co_occurs_with", ...
    weight: float = 1.0
    created_at: float = field(default_factory=time.time)

    @property
    def edge_id(self) -> str:
        return f"{self.source_id}--{self.type}-->{self.target_id}"


@dataclass
class AddMemoryResult:
    chunk_id: Optional[str] = None
    entities_extracted: int = 0
    relationships_extracted: int = 0

    @property
    def metadata(self) -> dict[str, int]:
        return {
            "entities_extracted": self.entities_extracted,
            "relationships_extracted": self.relationships_extracted,
        }


@dataclass
class MemoryQueryResult:
    entities: list[MemoryNode] = field(default_factory=list)
    relationships: list[MemoryRelationship] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryCluster:
    id: str
    theme: str
    member_ids: list[str] = field(default_factory=list)
    centroid: Optional[list[float]] = None

    @property
    def size(self) -> int:
        return len(self.member_ids)


@dataclass
class ClusteringSettings:
    similarity_threshold: float = 0.7
    max_clusters: int = 10
    min_cluster_size: int = 2
    algorithm: Literal["kmeans", "hierarchical"] = "kmeans"


class MemoryEngine(ABC):
    """Async interface to a knowledge-graph memory store."""

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def add_memory(
        self,
        content: str,
        context: GraphContext,
        embedding: Optional[list[float]] = None,
    ) -> AddMemoryResult:
        ...

    @abstractmethod
    async def query_memory(
        self,
        query: str,
        context: GraphContext,
        embedding: Optional[list[float]] = None,
        limit: int = 10,
        max_depth: int = 2,
    ) -> MemoryQueryResult:
        ...

    @abstractmethod
    async def create_clusters(self, settings: ClusteringSettings) -> list[MemoryCluster]:
        ...

    @abstractmethod
    async def find_related_clusters(
        self,
        embedding: list[float],
        clusters: list[MemoryCluster],
        k: int = 3,
    ) -> list[MemoryCluster]:
        ...

    @abstractmethod
    async def get_contextual_memories(
        self,
        history: list[ConversationMessage],
        k: int = 3,
    ) -> list[MemoryNode]:
        ...

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...
