"""Memory: the knowledge-graph contract, its in-process default, and clustering."""
from voxmind.memory.clustering import ClusteringCoordinator, ClusteringState
from voxmind.memory.engine import (
    AddMemoryResult,
    ClusteringSettings,
    MemoryCluster,
    MemoryEngine,
    MemoryNode,
    MemoryQueryResult,
    MemoryRelationship,
)
from voxmind.memory.graph import GraphMemoryEngine

__all__ = [
    "AddMemoryResult",
    "ClusteringCoordinator",
    "ClusteringSettings",
    "ClusteringState",
    "GraphMemoryEngine",
    "MemoryCluster",
    "MemoryEngine",
    "MemoryNode",
    "MemoryQueryResult",
    "MemoryRelationship",
]
