"""
Core data types shared across VoxMind subsystems.

This module defines the lightweight data containers that cross subsystem
boundaries: conversation turns, per-request context, reasoning steps,
capability results, the response envelope, metrics and state snapshots.
They live here rather than in a specific subsystem to avoid circular imports.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Optional

from voxmind._utils import clamp01, new_id

if TYPE_CHECKING:
    from voxmind.capabilities.registry import Capability
    from voxmind.config import VoxMindConfig

Role = Literal["user", "assistant", "system"]
StepType = Literal["observation", "analysis", "planning", "execution", "reflection", "error"]
ResponseType = Literal["text", "audio", "mixed"]

DEFAULT_USER_ID = "default-user"


@dataclass(frozen=True)
class ConversationMessage:
    """One dialogue turn. Immutable once created."""

    role: Role
    content: str
    id: str = field(default_factory=lambda: new_id("msg"))
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


@dataclass
class GraphContext:
    """Caller-supplied partial context; every field is optional."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: Optional[float] = None
    relevant_entities: list[str] = field(default_factory=list)
    source: Optional[str] = None


@dataclass
class AgentContext:
    """
    Per-request snapshot assembled from process-wide state.

    ``conversation_history`` and ``working_memory`` are the live shared
    structures, not copies: a concurrently running request sees the same
    objects.
    """

    user_id: str
    session_id: str
    conversation_history: list[ConversationMessage]
    working_memory: dict[str, Any]
    capabilities: list[Capability]
    config: VoxMindConfig
    timestamp: float = field(default_factory=time.time)
    relevant_entities: list[str] = field(default_factory=list)
    source: str = "conversation"
    request_id: str = field(default_factory=lambda: new_id("req"))


@dataclass
class ReasoningStep:
    """One recorded stage of a request's processing."""

    type: StepType
    description: str
    input: Any = None
    output: Any = None
    confidence: float = 0.0
    id: str = field(default_factory=lambda: new_id("step"))
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self.confidence = clamp01(self.confidence)


@dataclass
class CapabilityMetadata:
    execution_time: float = 0.0          # milliseconds
    confidence: Optional[float] = None
    source: Optional[str] = None

    def __post_init__(self) -> None:
        if self.confidence is not None:
            self.confidence = clamp01(self.confidence)


@dataclass
class CapabilityResult:
    """
    Outcome of one capability execution.

    Failures are data: ``success`` is False and ``error`` explains why.
    A capability never raises past its ``execute`` boundary.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: CapabilityMetadata = field(default_factory=CapabilityMetadata)

    def to_payload(self) -> dict[str, Any]:
        """The JSON-ready form fed back to the LLM as a tool message."""
        payload: dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error or "Unknown error"
        payload["metadata"] = asdict(self.metadata)
        return payload


@dataclass
class UserInput:
    """Structured request input: typed text or a path to recorded audio."""

    text: Optional[str] = None
    audio: Optional[str] = None
    speak: bool = False


@dataclass
class ResponseMetadata:
    processing_time: float = 0.0         # milliseconds
    confidence: float = 0.0
    tokens_used: Optional[int] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.confidence = clamp01(self.confidence)


@dataclass
class AgentResponse:
    """Structured response from ``AgentRuntime.process_request()``."""

    content: str
    type: ResponseType = "text"
    audio_path: Optional[str] = None
    reasoning: list[ReasoningStep] = field(default_factory=list)
    capabilities_used: list[str] = field(default_factory=list)
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)

    def __str__(self) -> str:
        return self.content


@dataclass
class MemoryUsage:
    conversation_history: int = 0
    working_memory: int = 0
    total: int = 0


@dataclass
class ErrorCounts:
    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


@dataclass
class AgentMetrics:
    total_requests: int = 0
    average_processing_time: float = 0.0     # EMA, milliseconds
    success_rate: float = 1.0                # running mean of the success flag
    capability_usage: dict[str, int] = field(default_factory=dict)
    memory_usage: MemoryUsage = field(default_factory=MemoryUsage)
    errors: ErrorCounts = field(default_factory=ErrorCounts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AgentState:
    """Point-in-time snapshot of the runtime, for persistence or inspection."""

    config: dict[str, Any]
    conversation_history: list[ConversationMessage]
    working_memory: dict[str, Any]
    active_plans: list[dict[str, Any]]
    metrics: AgentMetrics
    capabilities: list[str] = field(default_factory=list)
    clustering: dict[str, Any] = field(default_factory=dict)
    last_updated: float = field(default_factory=time.time)
