# voxmind/config.py
"""
Configuration for the VoxMind agent core.

All configuration flows through this module. Values are loaded from environment
variables (optionally via a project-root .env file) and validated with
Pydantic. Each subsystem gets its own settings group; ``VoxMindConfig`` composes
them into the single object the runtime is built from.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal, Optional

from pydantic import AliasChoices, BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings
import structlog


logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above voxmind/),
# so the config works regardless of the caller's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_SETTINGS = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts a bare string, a comma-separated string, a JSON array (parsed by
    pydantic-settings before this runs) or an existing list.
    """
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        return [part.strip() for part in stripped.split(",") if part.strip()]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


class PersonalityConfig(BaseSettings):
    """Who the agent presents itself as."""

    name: str = Field("Uncle Bob", alias="VOXMIND_AGENT_NAME")
    role: str = Field(
        "Personal Assistant & Technical Co-founder", alias="VOXMIND_AGENT_ROLE"
    )
    expertise: StrList = Field(
        default_factory=lambda: [
            "software development",
            "system architecture",
            "project management",
            "technical strategy",
            "problem solving",
            "knowledge management",
        ],
        alias="VOXMIND_AGENT_EXPERTISE",
    )
    communication_style: Literal["professional", "casual", "technical"] = Field(
        "professional", alias="VOXMIND_COMMUNICATION_STYLE"
    )

    model_config = _SETTINGS


class MemoryConfig(BaseSettings):
    """Conversation and knowledge-memory limits."""

    max_conversation_history: int = Field(50, alias="VOXMIND_MAX_CONVERSATION_HISTORY")
    # Informational only: working memory is unbounded in this core.
    max_working_memory_items: int = Field(100, alias="VOXMIND_MAX_WORKING_MEMORY_ITEMS")
    memory_retention_days: int = Field(30, alias="VOXMIND_MEMORY_RETENTION_DAYS")

    # Default in-process graph engine
    max_memory_nodes: int = Field(5000, alias="VOXMIND_MAX_MEMORY_NODES")
    max_entities_per_text: int = Field(50, alias="VOXMIND_MAX_ENTITIES_PER_TEXT")

    # Analysis-step retrieval sizes
    contextual_window: int = Field(3, alias="VOXMIND_CONTEXTUAL_WINDOW")
    contextual_results: int = Field(3, alias="VOXMIND_CONTEXTUAL_RESULTS")
    query_results: int = Field(10, alias="VOXMIND_QUERY_RESULTS")
    query_depth: int = Field(2, alias="VOXMIND_QUERY_DEPTH")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "MemoryConfig":
        self.max_conversation_history = max(1, int(self.max_conversation_history))
        self.max_working_memory_items = max(1, int(self.max_working_memory_items))
        self.memory_retention_days = max(0, int(self.memory_retention_days))
        self.max_memory_nodes = max(1, int(self.max_memory_nodes))
        self.max_entities_per_text = max(0, int(self.max_entities_per_text))
        self.contextual_window = max(1, int(self.contextual_window))
        self.contextual_results = max(1, int(self.contextual_results))
        self.query_results = max(1, int(self.query_results))
        self.query_depth = max(0, int(self.query_depth))
        return self


class ClusteringConfig(BaseSettings):
    """Semantic clustering of stored memories."""

    enabled: bool = Field(True, alias="VOXMIND_CLUSTERING_ENABLED")
    similarity_threshold: float = Field(0.7, alias="VOXMIND_CLUSTER_SIMILARITY_THRESHOLD")
    max_clusters: int = Field(10, alias="VOXMIND_MAX_CLUSTERS")
    min_cluster_size: int = Field(2, alias="VOXMIND_MIN_CLUSTER_SIZE")
    algorithm: Literal["kmeans", "hierarchical"] = Field(
        "kmeans", alias="VOXMIND_CLUSTER_ALGORITHM"
    )
    refresh_interval: float = Field(300.0, alias="VOXMIND_CLUSTER_REFRESH_INTERVAL")
    related_clusters: int = Field(3, alias="VOXMIND_RELATED_CLUSTERS")
    # Seconds after a failure before clustering may be re-enabled; 0 keeps it off.
    retry_after: float = Field(0.0, alias="VOXMIND_CLUSTER_RETRY_AFTER")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "ClusteringConfig":
        self.similarity_threshold = max(0.0, min(1.0, float(self.similarity_threshold)))
        self.max_clusters = max(1, int(self.max_clusters))
        self.min_cluster_size = max(1, int(self.min_cluster_size))
        self.refresh_interval = max(0.0, float(self.refresh_interval))
        self.related_clusters = max(1, int(self.related_clusters))
        self.retry_after = max(0.0, float(self.retry_after))
        return self


class LimitsConfig(BaseSettings):
    """Per-request processing limits."""

    max_processing_time: int = Field(30000, alias="VOXMIND_MAX_PROCESSING_TIME_MS")
    enforce_processing_deadline: bool = Field(False, alias="VOXMIND_ENFORCE_DEADLINE")
    # Capability calls executed per request; later calls get an error result.
    max_capabilities_per_request: int = Field(5, alias="VOXMIND_MAX_CAPABILITIES_PER_REQUEST")
    # Informational only: model replies are not truncated.
    max_response_length: int = Field(2000, alias="VOXMIND_MAX_RESPONSE_LENGTH")
    tool_timeout: float = Field(30.0, alias="VOXMIND_TOOL_TIMEOUT")
    tool_max_output_length: int = Field(25000, alias="VOXMIND_TOOL_MAX_OUTPUT_LENGTH")
    session_lock_cache_size: int = Field(512, alias="VOXMIND_SESSION_LOCK_CACHE_SIZE")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "LimitsConfig":
        self.max_processing_time = max(1, int(self.max_processing_time))
        self.max_capabilities_per_request = max(1, int(self.max_capabilities_per_request))
        self.max_response_length = max(1, int(self.max_response_length))
        self.tool_timeout = max(0.1, float(self.tool_timeout))
        self.tool_max_output_length = max(200, int(self.tool_max_output_length))
        self.session_lock_cache_size = max(1, int(self.session_lock_cache_size))
        return self


class FeatureConfig(BaseSettings):
    """Feature toggles."""

    # Informational only: the analysis step always runs.
    enable_reasoning: bool = Field(True, alias="VOXMIND_ENABLE_REASONING")
    # Registers the plan_task capability.
    enable_planning: bool = Field(True, alias="VOXMIND_ENABLE_PLANNING")
    enable_learning: bool = Field(True, alias="VOXMIND_ENABLE_LEARNING")
    enable_multi_modal: bool = Field(True, alias="VOXMIND_ENABLE_MULTI_MODAL")

    model_config = _SETTINGS


class LLMConfig(BaseSettings):
    """Configuration for the chat-completion provider."""

    provider: Literal["ollama", "lmstudio", "anthropic"] = Field(
        "ollama", validation_alias=AliasChoices("VOXMIND_LLM_PROVIDER", "LLM_PROVIDER")
    )
    model: str = Field(
        "qwen3:1.7b", validation_alias=AliasChoices("VOXMIND_LLM_MODEL", "LLM_MODEL")
    )
    ollama_base_url: str = Field("http://localhost:11434", alias="OLLAMA_BASE_URL")
    lmstudio_base_url: str = Field("http://localhost:1234", alias="LMSTUDIO_BASE_URL")
    anthropic_api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    max_tokens: int = Field(4096, alias="VOXMIND_MAX_TOKENS")
    enable_thinking: bool = Field(False, alias="VOXMIND_ENABLE_THINKING")
    request_timeout_seconds: float = Field(120.0, alias="VOXMIND_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(3, alias="VOXMIND_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="VOXMIND_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="VOXMIND_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="VOXMIND_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="VOXMIND_RETRY_JITTER_RANGE")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "LLMConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        return self


class EmbeddingConfig(BaseSettings):
    """Configuration for the embedding provider."""

    provider: Literal["ollama", "lmstudio"] = Field(
        "ollama", alias="VOXMIND_EMBEDDING_PROVIDER"
    )
    model: str = Field("mxbai-embed-large:latest", alias="VOXMIND_EMBEDDING_MODEL")

    model_config = _SETTINGS


class GroqConfig(BaseSettings):
    """Configuration for Groq Whisper audio transcription (optional)."""

    api_key: Optional[str] = Field(None, alias="GROQ_API_KEY")
    whisper_model: str = Field("whisper-large-v3-turbo", alias="VOXMIND_WHISPER_MODEL")
    max_audio_bytes: int = Field(25 * 1024 * 1024, alias="VOXMIND_GROQ_MAX_AUDIO_BYTES")

    model_config = _SETTINGS

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)


class ElevenLabsConfig(BaseSettings):
    """Configuration for ElevenLabs text-to-speech (optional)."""

    api_key: Optional[str] = Field(None, alias="ELEVENLABS_API_KEY")
    default_voice_id: str = Field("21m00Tcm4TlvDq8ikWAM", alias="VOXMIND_TTS_VOICE_ID")
    model_id: str = Field("eleven_multilingual_v2", alias="VOXMIND_TTS_MODEL_ID")
    output_format: str = Field("mp3_44100_128", alias="VOXMIND_TTS_OUTPUT_FORMAT")
    max_text_length: int = Field(4000, alias="VOXMIND_TTS_MAX_TEXT_LENGTH")
    output_dir: Path = Field(Path("./voxmind_data/audio"), alias="VOXMIND_TTS_OUTPUT_DIR")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "ElevenLabsConfig":
        self.max_text_length = max(1, int(self.max_text_length))
        return self

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)


class ToolsConfig(BaseSettings):
    """Built-in filesystem tool set."""

    enabled: bool = Field(True, alias="VOXMIND_TOOLS_ENABLED")
    # Empty means unrestricted; otherwise tools may only touch these directories.
    allowed_paths: StrList = Field(default_factory=list, alias="VOXMIND_TOOLS_ALLOWED_PATHS")

    model_config = _SETTINGS


class VoxMindConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its settings from here. Any group can be passed
    in explicitly (tests do this); missing groups are loaded from the
    environment.
    """

    def __init__(
        self,
        *,
        personality: Optional[PersonalityConfig] = None,
        memory: Optional[MemoryConfig] = None,
        clustering: Optional[ClusteringConfig] = None,
        limits: Optional[LimitsConfig] = None,
        features: Optional[FeatureConfig] = None,
        llm: Optional[LLMConfig] = None,
        embedding: Optional[EmbeddingConfig] = None,
        groq: Optional[GroqConfig] = None,
        elevenlabs: Optional[ElevenLabsConfig] = None,
        tools: Optional[ToolsConfig] = None,
    ):
        self.personality = personality or PersonalityConfig()
        self.memory = memory or MemoryConfig()
        self.clustering = clustering or ClusteringConfig()
        self.limits = limits or LimitsConfig()
        self.features = features or FeatureConfig()
        self.llm = llm or LLMConfig()
        self.embedding = embedding or EmbeddingConfig()
        self.groq = groq or GroqConfig()
        self.elevenlabs = elevenlabs or ElevenLabsConfig()
        self.tools = tools or ToolsConfig()

        if not self.elevenlabs.output_dir.is_absolute():
            self.elevenlabs.output_dir = (_PROJECT_ROOT / self.elevenlabs.output_dir).resolve()

    def to_dict(self) -> dict[str, Any]:
        """Serializable snapshot for state inspection; secrets are masked."""
        llm = self.llm.model_dump(exclude={"anthropic_api_key"})
        llm["anthropic_api_key_set"] = bool(self.llm.anthropic_api_key)
        return {
            "personality": self.personality.model_dump(),
            "memory": self.memory.model_dump(),
            "clustering": self.clustering.model_dump(),
            "limits": self.limits.model_dump(),
            "features": self.features.model_dump(),
            "llm": llm,
            "embedding": self.embedding.model_dump(),
            "groq": {"available": self.groq.is_available, "model": self.groq.whisper_model},
            "elevenlabs": {
                "available": self.elevenlabs.is_available,
                "output_dir": str(self.elevenlabs.output_dir),
            },
            "tools": self.tools.model_dump(),
        }

    def __repr__(self) -> str:
        return (
            f"VoxMindConfig(provider={self.llm.provider}, model={self.llm.model}, "
            f"history={self.memory.max_conversation_history}, "
            f"clustering={self.clustering.enabled})"
        )
