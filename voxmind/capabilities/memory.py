"""
Memory-backed capabilities: the model's window into the knowledge graph.

These are registered when the runtime is constructed, before any memory
engine exists, so they reach the engine through a late-bound
``MemoryBinding``. Until an engine is bound every one of them answers with a
failed result ("Memory not initialized") instead of raising.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from voxmind.capabilities.registry import Capability
from voxmind.capabilities.tools import validate_tool_input
from voxmind.types import CapabilityMetadata, CapabilityResult, GraphContext

if TYPE_CHECKING:
    from voxmind.memory.clustering import ClusteringCoordinator
    from voxmind.memory.engine import MemoryCluster, MemoryEngine, MemoryNode, MemoryRelationship
    from voxmind.types import AgentContext

MEMORY_NOT_INITIALIZED = "Memory not initialized"

Embedder = Callable[[str], Awaitable[list[float]]]


class MemoryBinding:
    """Handles the memory capabilities resolve at call time."""

    def __init__(
        self,
        clustering: ClusteringCoordinator,
        embed: Embedder,
        engine: Optional[MemoryEngine] = None,
        *,
        query_results: int = 10,
        query_depth: int = 2,
    ):
        self.clustering = clustering
        self.embed = embed
        self.engine = engine
        self.query_results = query_results
        self.query_depth = query_depth


def node_to_dict(node: MemoryNode) -> dict[str, Any]:
    """Model-facing view of a node; embeddings are left out."""
    return {
        "id": node.id,
        "name": node.label,
        "kind": node.kind,
        "content": node.content,
        "properties": dict(node.properties),
    }


def relationship_to_dict(rel: MemoryRelationship) -> dict[str, Any]:
    return {"source": rel.source_id, "target": rel.target_id, "type": rel.type, "weight": rel.weight}


def cluster_to_dict(cluster: MemoryCluster) -> dict[str, Any]:
    return {"id": cluster.id, "theme": cluster.theme, "size": cluster.size}


def graph_context_from(context: AgentContext) -> GraphContext:
    return GraphContext(
        user_id=context.user_id,
        session_id=context.session_id,
        timestamp=context.timestamp,
        relevant_entities=list(context.relevant_entities),
        source=context.source,
    )


_CONTENT_PARAMS = {
    "type": "object",
    "properties": {"content": {"type": "string", "description": "Text to look up"}},
    "required": ["content"],
}


class MemoryCapability(Capability):
    kind = "memory"
    source = "memory_system"
    result_source = "memory_system"
    confidence = 0.9

    def __init__(self, binding: MemoryBinding, id: str, description: str,
                 parameters: Optional[dict[str, Any]] = None, *, name: Optional[str] = None):
        super().__init__(id, description, parameters, name=name)
        self._binding = binding

    async def _run(self, params: dict[str, Any], context: AgentContext) -> CapabilityResult:
        engine = self._binding.engine
        if engine is None:
            return CapabilityResult(
                success=False,
                error=MEMORY_NOT_INITIALIZED,
                metadata=CapabilityMetadata(confidence=0.0, source="memory_system"),
            )
        validation_error = validate_tool_input(self.parameters, params)
        if validation_error:
            return CapabilityResult(
                success=False,
                error=validation_error,
                metadata=CapabilityMetadata(confidence=0.0, source=self.result_source),
            )
        data = await self._query(engine, params, context)
        return CapabilityResult(
            success=True,
            data=data,
            metadata=CapabilityMetadata(confidence=self.confidence, source=self.result_source),
        )

    @abstractmethod
    async def _query(self, engine: MemoryEngine, params: dict[str, Any], context: AgentContext) -> Any:
        """Return the JSON-ready payload for a bound engine."""


class QueryMemoryCapability(MemoryCapability):
    confidence = 0.9
    result_source = "dual_graph_memory_system"

    def __init__(self, binding: MemoryBinding):
        super().__init__(
            binding,
            "query_memory",
            "Search the knowledge base for entities and relationships related to a piece of "
            "text. Use it when the user refers to people, projects or facts mentioned before.",
            _CONTENT_PARAMS,
            name="Query Memory",
        )

    async def _query(self, engine, params, context):
        result = await engine.query_memory(
            params["content"],
            graph_context_from(context),
            limit=self._binding.query_results,
            max_depth=self._binding.query_depth,
        )
        return {
            "entities": [node_to_dict(n) for n in result.entities],
            "relationships": [relationship_to_dict(r) for r in result.relationships],
            "metadata": dict(result.metadata),
        }


class CreateClustersCapability(MemoryCapability):
    confidence = 0.95
    result_source = "clustering_system"

    def __init__(self, binding: MemoryBinding):
        super().__init__(
            binding,
            "create_clusters",
            "Group semantically similar memories into clusters and return their themes.",
            name="Create Semantic Clusters",
        )

    async def _query(self, engine, params, context):
        clusters = await self._binding.clustering.rebuild()
        return {"clusters": [cluster_to_dict(c) for c in clusters], "count": len(clusters)}


class DualGraphStatsCapability(MemoryCapability):
    confidence = 1.0
    result_source = "dual_graph_memory_system"

    def __init__(self, binding: MemoryBinding):
        super().__init__(
            binding,
            "get_dual_graph_stats",
            "Report node and relationship counts for the lexical and domain memory graphs.",
            name="Get Dual Graph Statistics",
        )

    async def _query(self, engine, params, context):
        return await engine.get_stats()


class FindRelatedClustersCapability(MemoryCapability):
    confidence = 0.9
    result_source = "clustering_system"
    top_k = 5

    def __init__(self, binding: MemoryBinding):
        super().__init__(
            binding,
            "find_related_clusters",
            "Find the memory clusters most similar to a query. Builds clusters first if "
            "none exist yet.",
            {
                "type": "object",
                "properties": {"query": {"type": "string", "description": "What to relate to"}},
                "required": ["query"],
            },
            name="Find Related Clusters",
        )

    async def _query(self, engine, params, context):
        clustering = self._binding.clustering
        if not clustering.clusters:
            await clustering.rebuild()
        embedding = await self._binding.embed(params["query"])
        related = await engine.find_related_clusters(embedding, clustering.clusters, self.top_k)
        return {"related_clusters": [cluster_to_dict(c) for c in related], "count": len(related)}


class ContextualMemoriesCapability(MemoryCapability):
    confidence = 0.85
    result_source = "contextual_memory"
    window = 5

    def __init__(self, binding: MemoryBinding):
        super().__init__(
            binding,
            "get_contextual_memories",
            "Retrieve stored memories that relate to the last few turns of this conversation.",
            name="Get Contextual Memories",
        )

    async def _query(self, engine, params, context):
        recent = list(context.conversation_history[-self.window:])
        memories = await engine.get_contextual_memories(recent, self.window)
        return {
            "contextual_memories": [node_to_dict(n) for n in memories],
            "count": len(memories),
        }


class AnalyzeEntitiesCapability(MemoryCapability):
    confidence = 0.8
    result_source = "entity_analysis"

    def __init__(self, binding: MemoryBinding):
        super().__init__(
            binding,
            "analyze_entities",
            "List the known entities in a piece of text and how they relate to each other.",
            _CONTENT_PARAMS,
            name="Analyze Entities",
        )

    async def _query(self, engine, params, context):
        result = await engine.query_memory(
            params["content"], graph_context_from(context), limit=5, max_depth=1
        )
        return {
            "entities": [node_to_dict(n) for n in result.entities],
            "relationships": [relationship_to_dict(r) for r in result.relationships],
        }


def memory_capabilities(binding: MemoryBinding) -> list[Capability]:
    return [
        QueryMemoryCapability(binding),
        CreateClustersCapability(binding),
        DualGraphStatsCapability(binding),
        FindRelatedClustersCapability(binding),
        ContextualMemoriesCapability(binding),
        AnalyzeEntitiesCapability(binding),
    ]
