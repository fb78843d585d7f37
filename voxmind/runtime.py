"""
Agent runtime: the request-processing core of VoxMind.

One ``AgentRuntime`` owns the process-wide state (conversation log, working
memory, capability registry, metrics, clustering) and turns each incoming
request into an ``AgentResponse``:

    1. Initialize once (memory engine, built-in tools, first clustering)
    2. Normalize the input; audio is transcribed first
    3. Assemble the request context from caller fields and live state
    4. Record the user turn
    5. Write the turn to memory, best effort
    6. Analyze the turn against memory
    7. Let the model answer through the tool-call loop
    8. Record the answer, update metrics, synthesize audio if asked

``process_request`` never raises. Anything that goes wrong in steps 1 to 8
becomes an apology response with zero confidence, and the failure is still
counted in the metrics.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Union

import structlog

from voxmind._utils import new_id
from voxmind.analysis import (
    assess_complexity,
    assess_urgency,
    classify_intent,
    extract_topics,
    overall_confidence,
)
from voxmind.api.provider import LLMProvider, build_embedder, build_provider
from voxmind.capabilities.memory import (
    MemoryBinding,
    graph_context_from,
    memory_capabilities,
    node_to_dict,
)
from voxmind.capabilities.planning import PlanTaskCapability
from voxmind.capabilities.registry import CapabilityRegistry
from voxmind.config import VoxMindConfig
from voxmind.conversation import ConversationManager
from voxmind.errors import (
    AgentErrorKind,
    ConfigurationError,
    ProcessingError,
    ValidationError,
    classify_error,
)
from voxmind.harness.loop import ToolCallLoop
from voxmind.media.speech import SpeechEngine
from voxmind.memory.clustering import ClusteringCoordinator
from voxmind.memory.engine import ClusteringSettings, MemoryEngine
from voxmind.memory.graph import GraphMemoryEngine
from voxmind.metrics import MetricsTracker
from voxmind.tools.filesystem import build_filesystem_tools
from voxmind.types import (
    DEFAULT_USER_ID,
    AgentContext,
    AgentMetrics,
    AgentResponse,
    AgentState,
    ConversationMessage,
    GraphContext,
    ReasoningStep,
    ResponseMetadata,
    UserInput,
)

logger = structlog.get_logger(__name__)

GREETING = "Hello! How can I help you today?"
MEMORY_UNAVAILABLE_RESPONSE = (
    "I'm sorry, but my memory system is not available right now, "
    "so I can't process this request."
)
APOLOGY_TEMPLATE = (
    "I apologize, but I encountered an error while processing your request: {message}"
)

RequestInput = Union[str, UserInput, dict]
MemoryFactory = Callable[[VoxMindConfig], Optional[MemoryEngine]]


def default_memory_engine(config: VoxMindConfig) -> MemoryEngine:
    return GraphMemoryEngine(
        max_nodes=config.memory.max_memory_nodes,
        max_entities_per_text=config.memory.max_entities_per_text,
    )


def _coerce_context(context: Union[GraphContext, dict, None]) -> GraphContext:
    if context is None:
        return GraphContext()
    if isinstance(context, GraphContext):
        return dataclasses.replace(context, relevant_entities=list(context.relevant_entities))
    if isinstance(context, dict):
        known = {f.name for f in dataclasses.fields(GraphContext)}
        return GraphContext(**{k: v for k, v in context.items() if k in known})
    raise ValidationError(
        f"Unsupported context type: {type(context).__name__}",
        code="INVALID_CONTEXT",
    )


class AgentRuntime:
    """
    Top-level request processor.

    Collaborators can be injected for tests or alternative deployments; any
    that are left out are built from ``config`` on first initialization.
    """

    def __init__(
        self,
        config: Optional[VoxMindConfig] = None,
        *,
        llm: Optional[LLMProvider] = None,
        embedder: Optional[LLMProvider] = None,
        memory_factory: Optional[MemoryFactory] = None,
        speech: Optional[SpeechEngine] = None,
    ):
        self.config = config or VoxMindConfig()
        self._llm = llm
        self._embedder = embedder
        self._memory_factory = memory_factory or default_memory_engine
        self._speech = speech or SpeechEngine(self.config.groq, self.config.elevenlabs)

        self._conversation = ConversationManager(self.config.memory.max_conversation_history)
        self._metrics = MetricsTracker()
        self._working_memory: dict[str, Any] = {}
        self._engine: Optional[MemoryEngine] = None
        self._loop: Optional[ToolCallLoop] = None

        clustering_cfg = self.config.clustering
        self._clustering = ClusteringCoordinator(
            None,
            ClusteringSettings(
                similarity_threshold=clustering_cfg.similarity_threshold,
                max_clusters=clustering_cfg.max_clusters,
                min_cluster_size=clustering_cfg.min_cluster_size,
                algorithm=clustering_cfg.algorithm,
            ),
            enabled=clustering_cfg.enabled,
            refresh_interval=clustering_cfg.refresh_interval,
            retry_after=clustering_cfg.retry_after,
        )

        self.registry = CapabilityRegistry()
        self._binding = MemoryBinding(
            self._clustering,
            self._embed,
            query_results=self.config.memory.query_results,
            query_depth=self.config.memory.query_depth,
        )
        for capability in memory_capabilities(self._binding):
            self.registry.register(capability)
        if self.config.features.enable_planning:
            self.registry.register(PlanTaskCapability())

        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._session_locks: OrderedDict[str, asyncio.Lock] = OrderedDict()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Bring up the memory engine, the model providers and the built-in tools.

        Safe to call any number of times and from concurrent requests; the
        work runs once. Raises ``ConfigurationError`` with code
        ``INIT_FAILED`` if setup fails, in which case the next call retries.
        """
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return

            logger.info(
                "agent_runtime.initializing",
                provider=self.config.llm.provider,
                model=self.config.llm.model,
            )
            try:
                if self._llm is None:
                    self._llm = build_provider(self.config.llm)
                if self._embedder is None:
                    self._embedder = build_embedder(self.config.llm, self.config.embedding)

                engine = self._memory_factory(self.config)
                if engine is not None:
                    await engine.initialize()
                else:
                    logger.warning("agent_runtime.no_memory_engine")

                if self.config.tools.enabled:
                    allowed = self.config.tools.allowed_paths or None
                    for tool in build_filesystem_tools(
                        allowed,
                        timeout=self.config.limits.tool_timeout,
                        max_output_length=self.config.limits.tool_max_output_length,
                    ):
                        if tool.id not in self.registry:
                            self.registry.register(tool)
            except Exception as exc:
                logger.error("agent_runtime.init_failed", error=str(exc), exc_info=True)
                raise ConfigurationError(
                    f"Failed to initialize agent runtime: {exc}",
                    code="INIT_FAILED",
                ) from exc

            self._engine = engine
            self._binding.engine = engine
            self._clustering.bind(engine)
            self._loop = ToolCallLoop(
                self._llm,
                self.registry,
                thinking=self.config.llm.enable_thinking,
                on_capability_used=self._metrics.record_capability_use,
                max_tool_calls=self.config.limits.max_capabilities_per_request,
            )
            self._initialized = True

            if engine is not None:
                await self._clustering.bootstrap()

            logger.info(
                "agent_runtime.initialized",
                capabilities=len(self.registry),
                memory=type(engine).__name__ if engine is not None else None,
                clusters=len(self._clustering.clusters),
            )

    async def close(self) -> None:
        if self._llm is not None:
            await self._llm.close()
        if self._embedder is not None and self._embedder is not self._llm:
            await self._embedder.close()
        await self._speech.close()
        logger.info("agent_runtime.closed")

    # =========================================================================
    # REQUEST PIPELINE
    # =========================================================================

    async def process_request(
        self,
        input: RequestInput,
        context: Union[GraphContext, dict, None] = None,
    ) -> AgentResponse:
        """Answer one request. Never raises; failures become apology responses."""
        start = time.monotonic()
        request_id = new_id("agent")
        session_id = None
        try:
            partial = _coerce_context(context)
            if not partial.session_id:
                partial.session_id = new_id("session")
            session_id = partial.session_id

            async with self._session_lock(session_id):
                start = time.monotonic()
                pipeline = self._process(input, partial, request_id, start)
                if not self.config.limits.enforce_processing_deadline:
                    return await pipeline
                deadline = self.config.limits.max_processing_time / 1000
                try:
                    return await asyncio.wait_for(pipeline, timeout=deadline)
                except asyncio.TimeoutError as exc:
                    raise ProcessingError(
                        "Request exceeded the maximum processing time of "
                        f"{self.config.limits.max_processing_time} ms",
                        code="DEADLINE_EXCEEDED",
                    ) from exc
        except Exception as exc:
            return self._failure_response(exc, start, request_id, session_id)

    async def _process(
        self,
        input: RequestInput,
        partial: GraphContext,
        request_id: str,
        start: float,
    ) -> AgentResponse:
        await self.initialize()

        content, speak = await self._normalize_input(input)
        context = self._build_context(partial, request_id)

        self._conversation.add_message(
            ConversationMessage(
                role="user",
                content=content,
                metadata={"session_id": context.session_id, "user_id": context.user_id},
            )
        )
        logger.info(
            "agent_runtime.request_received",
            request_id=request_id,
            session_id=context.session_id,
            content=content,
        )

        embedding = await self._try_embed(content)
        await self._store_in_memory(content, context, embedding)
        await self._clustering.maybe_refresh()

        analysis = await self._analyze(content, context, embedding)
        steps = [analysis]
        capabilities_used: list[str] = []
        tokens_used = None

        if analysis.type == "error":
            text = MEMORY_UNAVAILABLE_RESPONSE
            success = False
            self._metrics.record_error(AgentErrorKind.MEMORY)
        else:
            result = await self._loop.run(context, analysis)
            steps.append(result.step)
            text = result.text
            capabilities_used = result.capabilities_used
            tokens_used = result.tokens_used
            success = True
            if result.used_tools:
                logger.debug(
                    "agent_runtime.tools_used",
                    request_id=request_id,
                    tool_calls=len(result.tool_calls),
                    iterations=result.iterations,
                )

        self._conversation.add_message(
            ConversationMessage(
                role="assistant",
                content=text,
                metadata={"session_id": context.session_id, "request_id": request_id},
            )
        )

        response = AgentResponse(
            content=text,
            type="text",
            reasoning=steps,
            capabilities_used=capabilities_used,
            metadata=ResponseMetadata(
                processing_time=self._elapsed_ms(start),
                confidence=overall_confidence(steps),
                tokens_used=tokens_used,
                request_id=request_id,
                session_id=context.session_id,
            ),
        )
        if speak:
            audio_path = await self._try_synthesize(text)
            if audio_path:
                response.audio_path = audio_path
                response.type = "mixed"

        # After synthesis: a deadline hit there is recorded by the failure path alone.
        self._update_metrics(start, success)

        logger.info(
            "agent_runtime.request_completed",
            request_id=request_id,
            success=success,
            confidence=round(response.metadata.confidence, 3),
            processing_time_ms=round(response.metadata.processing_time, 1),
            capabilities=capabilities_used,
        )
        return response

    async def _normalize_input(self, input: RequestInput) -> tuple[str, bool]:
        """Return the text to process and whether spoken output was requested."""
        if isinstance(input, str):
            return (input if input.strip() else GREETING), False

        if isinstance(input, dict):
            input = UserInput(
                text=input.get("text"),
                audio=input.get("audio"),
                speak=bool(input.get("speak", False)),
            )
        if not isinstance(input, UserInput):
            raise ValidationError(
                f"Unsupported input type: {type(input).__name__}",
                code="INVALID_INPUT",
            )

        multi_modal = self.config.features.enable_multi_modal
        if (input.audio or input.speak) and not multi_modal:
            raise ValidationError("Audio input and output are disabled", code="MULTI_MODAL_DISABLED")

        if input.audio:
            return await self._speech.transcribe(input.audio), input.speak
        if input.text and input.text.strip():
            return input.text, input.speak
        return GREETING, input.speak

    def _build_context(self, partial: GraphContext, request_id: str) -> AgentContext:
        return AgentContext(
            user_id=partial.user_id or DEFAULT_USER_ID,
            session_id=partial.session_id or new_id("session"),
            conversation_history=self._conversation.get_history(),
            working_memory=self._working_memory,
            capabilities=self.registry.list_capabilities(),
            config=self.config,
            timestamp=partial.timestamp or time.time(),
            relevant_entities=list(partial.relevant_entities),
            source=partial.source or "conversation",
            request_id=request_id,
        )

    async def _embed(self, text: str) -> list[float]:
        if self._embedder is None:
            raise ConfigurationError("Embedding provider is not initialized", code="NOT_INITIALIZED")
        return await self._embedder.generate_embeddings(text)

    async def _try_embed(self, content: str) -> Optional[list[float]]:
        if self._engine is None:
            return None
        try:
            return await self._embed(content)
        except Exception as exc:
            logger.warning("agent_runtime.embedding_failed", error=str(exc))
            return None

    async def _store_in_memory(
        self,
        content: str,
        context: AgentContext,
        embedding: Optional[list[float]],
    ) -> None:
        """Write the turn to memory; a failed write is retried once without the embedding."""
        engine = self._engine
        if engine is None or not self.config.features.enable_learning:
            return

        graph_context = graph_context_from(context)
        try:
            result = await engine.add_memory(content, graph_context, embedding=embedding)
        except Exception as exc:
            logger.warning(
                "agent_runtime.memory_write_failed",
                error=str(exc),
                with_embedding=embedding is not None,
            )
            try:
                result = await engine.add_memory(content, graph_context)
            except Exception as retry_exc:
                logger.error("agent_runtime.memory_write_retry_failed", error=str(retry_exc))
                return

        logger.debug(
            "agent_runtime.memory_stored",
            entities=result.entities_extracted,
            relationships=result.relationships_extracted,
        )

    async def _analyze(
        self,
        content: str,
        context: AgentContext,
        embedding: Optional[list[float]],
    ) -> ReasoningStep:
        engine = self._engine
        if engine is None:
            return ReasoningStep(
                type="error",
                description="Memory instance is not initialized",
                input=content,
                output=None,
                confidence=0.0,
            )

        memory_cfg = self.config.memory
        entities = []
        try:
            found = await engine.query_memory(
                content,
                graph_context_from(context),
                embedding=embedding,
                limit=memory_cfg.query_results,
                max_depth=memory_cfg.query_depth,
            )
            entities = [node_to_dict(node) for node in found.entities]
        except Exception as exc:
            logger.warning("agent_runtime.memory_query_failed", error=str(exc))

        contextual = []
        window = context.conversation_history[-memory_cfg.contextual_window:]
        if window:
            try:
                contextual = await engine.get_contextual_memories(
                    list(window), memory_cfg.contextual_results
                )
            except Exception as exc:
                logger.warning("agent_runtime.contextual_memories_failed", error=str(exc))

        related = []
        if self._clustering.enabled and embedding is not None and self._clustering.clusters:
            try:
                related = await engine.find_related_clusters(
                    embedding,
                    self._clustering.clusters,
                    self.config.clustering.related_clusters,
                )
            except Exception as exc:
                logger.warning("agent_runtime.related_clusters_failed", error=str(exc))

        analysis = {
            "intent": classify_intent(content),
            "entities": entities,
            "topics": extract_topics(content),
            "complexity": assess_complexity(content),
            "urgency": assess_urgency(content),
            "related_entities": len(entities),
            "semantic_matches": len(entities) if embedding is not None else 0,
            "contextual_memories": len(contextual),
            "related_clusters": len(related),
            "cluster_themes": [c.theme for c in related][:2],
        }
        return ReasoningStep(
            type="analysis",
            description="Analyzed user input with semantic search, contextual memories, and clustering",
            input=content,
            output=analysis,
            confidence=0.8,
        )

    async def _try_synthesize(self, text: str) -> Optional[str]:
        try:
            return await self._speech.synthesize(text)
        except Exception as exc:
            logger.warning("agent_runtime.synthesis_failed", error=str(exc))
            return None

    def _failure_response(
        self,
        exc: Exception,
        start: float,
        request_id: str,
        session_id: Optional[str],
    ) -> AgentResponse:
        kind = classify_error(exc)
        logger.error(
            "agent_runtime.request_failed",
            request_id=request_id,
            kind=kind.value,
            error=str(exc),
            exc_info=True,
        )
        self._metrics.record_error(kind)
        self._update_metrics(start, False)
        return AgentResponse(
            content=APOLOGY_TEMPLATE.format(message=str(exc) or "Unknown error"),
            type="text",
            metadata=ResponseMetadata(
                processing_time=self._elapsed_ms(start),
                confidence=0.0,
                request_id=request_id,
                session_id=session_id,
            ),
        )

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        """Per-session lock from a bounded LRU; idle locks are evicted first."""
        lock = self._session_locks.get(session_id)
        if lock is not None:
            self._session_locks.move_to_end(session_id)
            return lock

        lock = asyncio.Lock()
        self._session_locks[session_id] = lock
        cap = self.config.limits.session_lock_cache_size
        for key in list(self._session_locks):
            if len(self._session_locks) <= cap:
                break
            if key != session_id and not self._session_locks[key].locked():
                del self._session_locks[key]
        return lock

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.monotonic() - start) * 1000

    def _update_metrics(self, start: float, success: bool) -> None:
        self._metrics.update_metrics(
            self._elapsed_ms(start),
            success,
            len(self._conversation),
            len(self._working_memory),
        )

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def conversation(self) -> ConversationManager:
        return self._conversation

    @property
    def clustering(self) -> ClusteringCoordinator:
        return self._clustering

    @property
    def working_memory(self) -> dict[str, Any]:
        return self._working_memory

    @property
    def memory_engine(self) -> Optional[MemoryEngine]:
        return self._engine

    @property
    def loop_stats(self) -> dict[str, Any]:
        return self._loop.stats if self._loop is not None else {}

    async def maybe_refresh_clusters(self, now: Optional[float] = None) -> bool:
        return await self._clustering.maybe_refresh(now)

    def get_metrics(self) -> AgentMetrics:
        return self._metrics.get_metrics()

    def get_state(self) -> AgentState:
        """Snapshot for persistence or inspection; detached from live state."""
        return AgentState(
            config=self.config.to_dict(),
            conversation_history=self._conversation.snapshot(),
            working_memory=dict(self._working_memory),
            active_plans=[],
            metrics=self._metrics.get_metrics(),
            capabilities=self.registry.ids(),
            clustering=self._clustering.snapshot(),
        )

    def clear(self) -> None:
        """Forget the conversation, working memory and clusters. Metrics are kept."""
        self._conversation.clear()
        self._working_memory.clear()
        self._clustering.reset()
        logger.info("agent_runtime.cleared")
