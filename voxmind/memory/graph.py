"""
Graph Memory: the default in-process knowledge store.

A small dual graph kept entirely in memory:

- The lexical graph holds one ``chunk`` node per stored text, carrying the
  text and (when available) its embedding.
- The domain graph holds ``entity`` nodes, one per distinct name seen in the
  text (capitalized phrases plus any entities supplied by the caller).
  ``mentions`` edges link chunks to the entities they contain and
  ``co_occurs_with`` edges link entities that appear together.

Retrieval blends keyword overlap with embedding similarity (cosine over the
chunk vectors, computed with numpy) and then walks co-occurrence edges to
pull in neighboring entities. Clustering groups chunk embeddings around
centroids.

This is deliberately simple. Anything that needs real entity extraction or a
persistent graph should bind a different ``MemoryEngine``.
"""

from __future__ import annotations

import re
import time
from collections import Counter
from typing import Any, Optional

import numpy as np
import structlog

from voxmind.errors import MemoryEngineError, ValidationError
from voxmind.memory.engine import (
    AddMemoryResult,
    ClusteringSettings,
    MemoryCluster,
    MemoryEngine,
    MemoryNode,
    MemoryQueryResult,
    MemoryRelationship,
)
from voxmind.types import ConversationMessage, GraphContext

logger = structlog.get_logger(__name__)

_ENTITY_RE = re.compile(r"\b[A-Z][\w+#.-]*(?:\s+[A-Z][\w+#.-]*)*")
_TOKEN_RE = re.compile(r"[a-z0-9_+#]+")

# Capitalized words that start sentences far more often than they name things.
_ENTITY_STOPWORDS = frozenset({
    "i", "a", "an", "the", "this", "that", "these", "those", "it", "we", "you",
    "he", "she", "they", "my", "our", "your", "what", "how", "why", "when",
    "where", "who", "which", "can", "could", "would", "should", "please", "help",
    "hi", "hello", "hey", "thanks", "thank", "yes", "no", "ok", "okay", "so",
    "and", "but", "or", "if", "is", "are", "do", "does", "let", "also",
})
_TOKEN_STOPWORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "her",
    "was", "one", "our", "out", "his", "has", "had", "how", "its", "who", "did",
    "get", "may", "him", "she", "use", "that", "with", "have", "this", "will",
    "your", "from", "they", "been", "what", "when", "were", "some", "into",
    "about", "would", "there", "their", "could", "please", "is", "to", "of",
    "in", "it", "on", "me", "my", "we", "be", "do", "an", "or", "at", "as",
    "by", "so", "if", "no", "up",
})

_KMEANS_ITERATIONS = 10
_DEPTH_DECAY = 0.5
_MAX_COOCCURRENCE_ENTITIES = 12


def tokenize(text: str) -> set[str]:
    return {
        token for token in _TOKEN_RE.findall((text or "").lower())
        if len(token) > 1 and token not in _TOKEN_STOPWORDS
    }


def extract_entities(text: str, limit: int = 50) -> list[str]:
    """Naive entity spotting: capitalized phrases, first occurrence order."""
    seen: dict[str, str] = {}
    for match in _ENTITY_RE.finditer(text or ""):
        words = match.group(0).strip(" .-").split()
        # Drop a leading sentence-start stopword ("What Python ..." -> "Python").
        while words and words[0].lower() in _ENTITY_STOPWORDS:
            words = words[1:]
        phrase = " ".join(words).strip(" .-")
        if len(phrase) < 2:
            continue
        key = phrase.lower()
        if key not in seen:
            seen[key] = phrase
        if len(seen) >= limit:
            break
    return list(seen.values())


def _unit_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


class GraphMemoryEngine(MemoryEngine):
    """In-process dual-graph memory with hybrid retrieval and centroid clustering."""

    def __init__(
        self,
        max_nodes: int = 5000,
        max_entities_per_text: int = 50,
        hybrid_keyword_weight: float = 0.5,
        hybrid_embedding_weight: float = 0.5,
    ):
        self._max_nodes = max(1, int(max_nodes))
        self._max_entities = max(0, int(max_entities_per_text))

        total = max(0.0, hybrid_keyword_weight) + max(0.0, hybrid_embedding_weight)
        if total <= 0:
            self._keyword_weight = self._embedding_weight = 0.5
        else:
            self._keyword_weight = max(0.0, hybrid_keyword_weight) / total
            self._embedding_weight = max(0.0, hybrid_embedding_weight) / total

        self._nodes: dict[str, MemoryNode] = {}
        self._edges: dict[str, MemoryRelationship] = {}
        self._label_index: dict[str, str] = {}   # lowercased entity label -> node id
        self._chunk_order: list[str] = []        # oldest first
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        self._initialized = True
        logger.info(
            "graph_memory.initialized",
            max_nodes=self._max_nodes,
            keyword_weight=round(self._keyword_weight, 2),
        )

    async def clear(self) -> None:
        self._nodes.clear()
        self._edges.clear()
        self._label_index.clear()
        self._chunk_order.clear()
        logger.info("graph_memory.cleared")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_memory(
        self,
        content: str,
        context: GraphContext,
        embedding: Optional[list[float]] = None,
    ) -> AddMemoryResult:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Cannot store empty memory content", code="EMPTY_CONTENT")

        chunk = MemoryNode(
            label=" ".join(content.split()[:8]),
            kind="chunk",
            content=content,
            embedding=list(embedding) if embedding else None,
            properties={
                "user_id": context.user_id,
                "session_id": context.session_id,
                "source": context.source,
                "timestamp": context.timestamp or time.time(),
            },
        )
        self._nodes[chunk.id] = chunk
        self._chunk_order.append(chunk.id)

        names = extract_entities(content, self._max_entities)
        for extra in context.relevant_entities:
            if extra and extra.lower() not in {n.lower() for n in names}:
                names.append(extra)
        names = names[: self._max_entities] if self._max_entities else []

        entity_ids = [self._upsert_entity(name, chunk.id) for name in names]

        relationships = 0
        for entity_id in entity_ids:
            self._add_edge(chunk.id, entity_id, "mentions")
            relationships += 1

        linked = entity_ids[:_MAX_COOCCURRENCE_ENTITIES]
        for i, left in enumerate(linked):
            for right in linked[i + 1:]:
                source, target = sorted((left, right))
                self._add_edge(source, target, "co_occurs_with")
                relationships += 1

        self._evict_if_needed()

        logger.debug(
            "graph_memory.stored",
            content=content,
            entities=len(entity_ids),
            relationships=relationships,
            has_embedding=embedding is not None,
        )
        return AddMemoryResult(
            chunk_id=chunk.id,
            entities_extracted=len(entity_ids),
            relationships_extracted=relationships,
        )

    def _upsert_entity(self, name: str, chunk_id: str) -> str:
        key = name.lower()
        existing_id = self._label_index.get(key)
        if existing_id and existing_id in self._nodes:
            node = self._nodes[existing_id]
            node.properties["mentions"] = node.properties.get("mentions", 0) + 1
            node.properties["last_seen"] = time.time()
            return existing_id

        node = MemoryNode(
            label=name,
            kind="entity",
            content=name,
            properties={"mentions": 1, "first_chunk": chunk_id, "last_seen": time.time()},
        )
        self._nodes[node.id] = node
        self._label_index[key] = node.id
        return node.id

    def _add_edge(self, source_id: str, target_id: str, rel_type: str) -> MemoryRelationship:
        edge = MemoryRelationship(source_id=source_id, target_id=target_id, type=rel_type)
        existing = self._edges.get(edge.edge_id)
        if existing is not None:
            existing.weight += 1.0
            return existing
        self._edges[edge.edge_id] = edge
        return edge

    def _evict_if_needed(self) -> None:
        """Drop the oldest chunks (and entities left unmentioned) past the node cap."""
        evicted = 0
        while len(self._nodes) > self._max_nodes and len(self._chunk_order) > 1:
            chunk_id = self._chunk_order.pop(0)
            self._nodes.pop(chunk_id, None)
            evicted += 1
            touched = {
                e.target_id for e in self._edges.values()
                if e.source_id == chunk_id and e.type == "mentions"
            }
            self._edges = {
                k: e for k, e in self._edges.items()
                if e.source_id != chunk_id and e.target_id != chunk_id
            }
            for entity_id in touched:
                still_mentioned = any(
                    e.target_id == entity_id and e.type == "mentions"
                    for e in self._edges.values()
                )
                if not still_mentioned:
                    self._drop_entity(entity_id)
        if evicted:
            logger.info("graph_memory.evicted", chunks=evicted, remaining=len(self._nodes))

    def _drop_entity(self, entity_id: str) -> None:
        node = self._nodes.pop(entity_id, None)
        if node is not None:
            self._label_index.pop(node.label.lower(), None)
        self._edges = {
            k: e for k, e in self._edges.items()
            if e.source_id != entity_id and e.target_id != entity_id
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _chunks(self) -> list[MemoryNode]:
        return [self._nodes[cid] for cid in self._chunk_order if cid in self._nodes]

    def _mentioned_by(self, chunk_id: str) -> list[str]:
        return [
            e.target_id for e in self._edges.values()
            if e.source_id == chunk_id and e.type == "mentions"
        ]

    def _neighbors(self, entity_id: str) -> list[str]:
        out = []
        for e in self._edges.values():
            if e.type != "co_occurs_with":
                continue
            if e.source_id == entity_id:
                out.append(e.target_id)
            elif e.target_id == entity_id:
                out.append(e.source_id)
        return out

    def _chunk_similarities(self, embedding: list[float]) -> dict[str, float]:
        chunks = [c for c in self._chunks() if c.embedding]
        query = np.asarray(embedding, dtype=float)
        chunks = [c for c in chunks if len(c.embedding) == query.shape[0]]
        if not chunks or not np.any(query):
            return {}
        matrix = _unit_rows(np.asarray([c.embedding for c in chunks], dtype=float))
        sims = matrix @ (query / np.linalg.norm(query))
        return {c.id: max(0.0, float(s)) for c, s in zip(chunks, sims)}

    async def query_memory(
        self,
        query: str,
        context: GraphContext,
        embedding: Optional[list[float]] = None,
        limit: int = 10,
        max_depth: int = 2,
    ) -> MemoryQueryResult:
        start = time.monotonic()
        terms = tokenize(query)
        scores: dict[str, float] = {}

        if terms:
            for node in self._nodes.values():
                text = node.content if node.kind == "chunk" else node.label
                overlap = len(terms & tokenize(text))
                if not overlap:
                    continue
                kw = self._keyword_weight * overlap / len(terms)
                if node.kind == "entity":
                    scores[node.id] = scores.get(node.id, 0.0) + kw
                else:
                    for entity_id in self._mentioned_by(node.id):
                        scores[entity_id] = max(scores.get(entity_id, 0.0), kw * 0.5)

        chunk_sims = self._chunk_similarities(embedding) if embedding else {}
        for chunk_id, sim in chunk_sims.items():
            for entity_id in self._mentioned_by(chunk_id):
                scores[entity_id] = scores.get(entity_id, 0.0) + self._embedding_weight * sim

        for name in context.relevant_entities:
            entity_id = self._label_index.get(name.lower())
            if entity_id:
                scores[entity_id] = scores.get(entity_id, 0.0) + self._keyword_weight

        seeds = {eid: s for eid, s in scores.items() if s > 0}
        ranked = dict(seeds)
        frontier = list(seeds)
        for depth in range(1, max(0, max_depth) + 1):
            next_frontier = []
            for entity_id in frontier:
                for neighbor in self._neighbors(entity_id):
                    decayed = ranked[entity_id] * _DEPTH_DECAY
                    if decayed > ranked.get(neighbor, 0.0):
                        if neighbor not in ranked:
                            next_frontier.append(neighbor)
                        ranked[neighbor] = decayed
            frontier = next_frontier
            if not frontier:
                break

        top_ids = [
            eid for eid, _ in sorted(ranked.items(), key=lambda x: x[1], reverse=True)
            if eid in self._nodes
        ][: max(1, limit)]
        selected = set(top_ids)
        relationships = [
            e for e in self._edges.values()
            if e.type == "co_occurs_with" and e.source_id in selected and e.target_id in selected
        ]

        return MemoryQueryResult(
            entities=[self._nodes[eid] for eid in top_ids],
            relationships=relationships,
            metadata={
                "seed_count": len(seeds),
                "chunks_matched": sum(1 for s in chunk_sims.values() if s > 0),
                "mode": "hybrid" if chunk_sims else "keyword",
                "query_time_ms": round((time.monotonic() - start) * 1000, 2),
            },
        )

    async def get_contextual_memories(
        self,
        history: list[ConversationMessage],
        k: int = 3,
    ) -> list[MemoryNode]:
        window_texts = {m.content.strip() for m in history}
        terms = set()
        for message in history:
            terms |= tokenize(message.content)
        if not terms:
            return []

        scored = []
        for chunk in self._chunks():
            if chunk.content in window_texts:
                continue
            overlap = len(terms & tokenize(chunk.content))
            if overlap:
                scored.append((overlap / len(terms), chunk.created_at, chunk))
        scored.sort(key=lambda x: (x[0], x[1]), reverse=True)
        return [chunk for _, _, chunk in scored[: max(0, k)]]

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    async def create_clusters(self, settings: ClusteringSettings) -> list[MemoryCluster]:
        chunks = [c for c in self._chunks() if c.embedding]
        if len(chunks) < settings.min_cluster_size:
            return []

        dims = {len(c.embedding) for c in chunks}
        if len(dims) != 1:
            raise MemoryEngineError(
                "Stored embeddings have inconsistent dimensions",
                code="EMBEDDING_DIMENSION_MISMATCH",
                details={"dimensions": sorted(dims)},
            )

        vectors = _unit_rows(np.asarray([c.embedding for c in chunks], dtype=float))
        centroids, labels = self._leader_partition(vectors, settings)
        if settings.algorithm == "kmeans" and len(centroids) > 1:
            centroids, labels = self._refine_kmeans(vectors, centroids)

        clusters = []
        for idx in range(len(centroids)):
            members = [chunks[i] for i in np.flatnonzero(labels == idx)]
            if len(members) < settings.min_cluster_size:
                continue
            clusters.append(
                MemoryCluster(
                    id=f"cluster_{len(clusters)}",
                    theme=self._theme_for(members),
                    member_ids=[m.id for m in members],
                    centroid=centroids[idx].tolist(),
                )
            )

        logger.info(
            "graph_memory.clustered",
            clusters=len(clusters),
            chunks=len(chunks),
            algorithm=settings.algorithm,
        )
        return clusters

    @staticmethod
    def _leader_partition(
        vectors: np.ndarray,
        settings: ClusteringSettings,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Single pass: join the closest leader above threshold, else lead a new group."""
        leaders: list[np.ndarray] = []
        labels = np.zeros(len(vectors), dtype=int)
        for i, vec in enumerate(vectors):
            if leaders:
                sims = np.asarray(leaders) @ vec
                best = int(np.argmax(sims))
                if sims[best] >= settings.similarity_threshold or len(leaders) >= settings.max_clusters:
                    labels[i] = best
                    continue
            leaders.append(vec)
            labels[i] = len(leaders) - 1

        centroids = np.asarray([
            vectors[labels == idx].mean(axis=0) for idx in range(len(leaders))
        ])
        return _unit_rows(centroids), labels

    @staticmethod
    def _refine_kmeans(
        vectors: np.ndarray,
        centroids: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        labels = np.argmax(vectors @ centroids.T, axis=1)
        for _ in range(_KMEANS_ITERATIONS):
            updated = centroids.copy()
            for idx in range(len(centroids)):
                members = vectors[labels == idx]
                if len(members):
                    updated[idx] = members.mean(axis=0)
            updated = _unit_rows(updated)
            new_labels = np.argmax(vectors @ updated.T, axis=1)
            centroids = updated
            if np.array_equal(new_labels, labels):
                break
            labels = new_labels
        return centroids, labels

    def _theme_for(self, members: list[MemoryNode]) -> str:
        counts: Counter[str] = Counter()
        for member in members:
            for entity_id in self._mentioned_by(member.id):
                node = self._nodes.get(entity_id)
                if node is not None:
                    counts[node.label] += 1
        if counts:
            return ", ".join(label for label, _ in counts.most_common(3))
        return " ".join(members[0].content.split()[:5])

    async def find_related_clusters(
        self,
        embedding: list[float],
        clusters: list[MemoryCluster],
        k: int = 3,
    ) -> list[MemoryCluster]:
        query = np.asarray(embedding, dtype=float)
        scored = []
        for cluster in clusters:
            if not cluster.centroid or len(cluster.centroid) != query.shape[0]:
                continue
            scored.append((_cosine(query, np.asarray(cluster.centroid, dtype=float)), cluster))
        scored.sort(key=lambda x: x[0], reverse=True)
        return [cluster for _, cluster in scored[: max(0, k)]]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        chunks = self._chunks()
        entity_count = len(self._nodes) - len(chunks)
        mentions = sum(1 for e in self._edges.values() if e.type == "mentions")
        return {
            "initialized": self._initialized,
            "total_nodes": len(self._nodes),
            "total_relationships": len(self._edges),
            "lexical_graph": {
                "chunks": len(chunks),
                "embedded_chunks": sum(1 for c in chunks if c.embedding),
                "mentions": mentions,
            },
            "domain_graph": {
                "entities": entity_count,
                "relationships": len(self._edges) - mentions,
            },
        }

    @property
    def node_count(self) -> int:
        return len(self._nodes)
