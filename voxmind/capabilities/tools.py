"""
Tool-backed capabilities.

A ``ToolCapability`` wraps a plain handler function (sync or async) together
with its JSON Schema. Before the handler runs, the model-provided arguments
are checked against the schema; while it runs, a timeout applies; when it
returns, oversized output is truncated. Every failure along the way comes
back as a failed ``CapabilityResult`` the model can read and correct.
"""

from __future__ import annotations

import asyncio
import functools
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog

from voxmind.capabilities.registry import Capability
from voxmind.types import CapabilityMetadata, CapabilityResult

if TYPE_CHECKING:
    from voxmind.types import AgentContext

logger = structlog.get_logger(__name__)

# JSON Schema type -> Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def validate_tool_input(schema: dict[str, Any], tool_input: dict[str, Any]) -> Optional[str]:
    """
    Lightweight JSON Schema check of tool arguments.

    Checks required fields and basic types. Returns an error message, or
    None when the input is acceptable.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not isinstance(prop_schema, dict):
            continue
        expected_type = prop_schema.get("type")
        py_types = _JSON_TYPE_MAP.get(expected_type) if expected_type else None
        if py_types is None:
            continue
        # bool is an int subclass in Python, but JSON keeps them apart.
        if isinstance(value, bool) and expected_type in ("integer", "number"):
            return f"Parameter '{name}' expected {expected_type}, got boolean"
        if not isinstance(value, py_types):
            return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"
        allowed = prop_schema.get("enum")
        if allowed and value not in allowed:
            return f"Parameter '{name}' must be one of: {', '.join(map(str, allowed))}"

    return None


class ToolCapability(Capability):
    """A capability that runs a handler function with schema-checked arguments."""

    kind = "tool"

    def __init__(
        self,
        id: str,
        description: str,
        parameters: dict[str, Any],
        handler: Callable[..., Any],
        *,
        timeout: float = 30.0,
        max_output_length: int = 25000,
        confidence: float = 0.95,
    ):
        super().__init__(id, description, parameters)
        self.handler = handler
        self.timeout = timeout
        self.max_output_length = max_output_length
        self.confidence = confidence
        self.source = id

    async def _run(self, params: dict[str, Any], context: AgentContext) -> CapabilityResult:
        validation_error = validate_tool_input(self.parameters, params)
        if validation_error:
            return self._failure(validation_error)

        try:
            if asyncio.iscoroutinefunction(self.handler):
                result = await asyncio.wait_for(self.handler(**params), timeout=self.timeout)
            else:
                result = await asyncio.wait_for(
                    asyncio.to_thread(functools.partial(self.handler, **params)),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError:
            logger.warning("tool.timeout", tool_name=self.id, timeout=self.timeout)
            return self._failure(f"Tool execution timed out after {self.timeout}s")

        result_str = str(result)
        if len(result_str) > self.max_output_length:
            keep = self.max_output_length - 100
            result = (
                result_str[:keep]
                + f"\n\n[Output truncated: {len(result_str)} chars total, showing first {keep}]"
            )

        logger.info("tool.success", tool_name=self.id, result_length=len(str(result)))
        return CapabilityResult(
            success=True,
            data=result,
            metadata=CapabilityMetadata(confidence=self.confidence, source=self.id),
        )

    def _failure(self, error: str) -> CapabilityResult:
        return CapabilityResult(
            success=False,
            error=error,
            metadata=CapabilityMetadata(confidence=0.0, source=self.id),
        )
