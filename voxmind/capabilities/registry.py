"""
Capability Registry: the agent's catalog of things it can do.

Every action the model may request is a ``Capability``: a tool backed by a
handler, a query against the memory engine, or a planning stub. They all
share one surface, ``execute(params, context) -> CapabilityResult``, so the
tool-call loop never needs to know what kind of action it is dispatching.

The registry serves two purposes:

1. DISCOVERY: it renders every registered capability into the function-tool
   schema that is sent to the model on each turn.

2. DISPATCH: when the model asks for a tool by name, the registry maps that
   name to the capability that runs it.

Ids are unique. Registering a second capability under an existing id raises,
unless the caller asks for an explicit replacement with ``allow_override``.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Literal, Optional

import structlog

from voxmind.types import CapabilityMetadata, CapabilityResult

if TYPE_CHECKING:
    from voxmind.types import AgentContext

logger = structlog.get_logger(__name__)

CapabilityKind = Literal["tool", "memory", "planning"]


class Capability(ABC):
    """
    A named, invocable unit of agent behavior.

    Subclasses implement ``_run`` and return a ``CapabilityResult``.
    ``execute`` wraps it with timing and turns any exception into a failed
    result, so nothing raised inside a capability escapes to the caller.
    """

    kind: CapabilityKind = "tool"
    source: str = "capability"

    def __init__(
        self,
        id: str,
        description: str,
        parameters: Optional[dict[str, Any]] = None,
        *,
        name: Optional[str] = None,
    ):
        self.id = id
        self.name = name or id
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}

    async def execute(self, params: dict[str, Any], context: AgentContext) -> CapabilityResult:
        start = time.monotonic()
        try:
            result = await self._run(params or {}, context)
        except Exception as exc:
            logger.error(
                "capability.error",
                capability=self.id,
                error=f"{type(exc).__name__}: {exc}",
            )
            result = CapabilityResult(
                success=False,
                error=str(exc) or type(exc).__name__,
                metadata=CapabilityMetadata(confidence=0.0, source=self.source),
            )
        result.metadata.execution_time = round((time.monotonic() - start) * 1000, 3)
        if result.metadata.source is None:
            result.metadata.source = self.source
        return result

    @abstractmethod
    async def _run(self, params: dict[str, Any], context: AgentContext) -> CapabilityResult:
        ...

    def to_api_format(self) -> dict[str, Any]:
        """The function-tool shape sent in the model's ``tools`` array."""
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, kind={self.kind!r})"


class CapabilityRegistry:
    """Central registry of capabilities, keyed by stable id."""

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, capability: Capability, *, allow_override: bool = False) -> None:
        """Register a capability, rejecting id collisions unless overriding explicitly."""
        existing = self._capabilities.get(capability.id)
        if existing is not None and not allow_override:
            logger.warning(
                "capability_registry.id_collision",
                id=capability.id,
                existing_kind=existing.kind,
                new_kind=capability.kind,
            )
            raise ValueError(
                f"Capability '{capability.id}' is already registered. "
                "Use allow_override=True for an explicit replacement."
            )
        self._capabilities[capability.id] = capability
        logger.debug("capability_registry.registered", id=capability.id, kind=capability.kind)

    def unregister(self, capability_id: str) -> bool:
        if capability_id in self._capabilities:
            del self._capabilities[capability_id]
            logger.info("capability_registry.unregistered", id=capability_id)
            return True
        return False

    def get(self, capability_id: str) -> Optional[Capability]:
        return self._capabilities.get(capability_id)

    def list_capabilities(self, kind: Optional[CapabilityKind] = None) -> list[Capability]:
        return [c for c in self._capabilities.values() if kind is None or c.kind == kind]

    def ids(self) -> list[str]:
        return list(self._capabilities)

    def api_tools(self) -> list[dict[str, Any]]:
        return [c.to_api_format() for c in self._capabilities.values()]

    def __contains__(self, capability_id: object) -> bool:
        return capability_id in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
