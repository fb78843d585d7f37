"""Planning stub: a fixed outline the model can hang a multi-step answer on."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from voxmind.capabilities.registry import Capability
from voxmind.capabilities.tools import validate_tool_input
from voxmind.types import CapabilityMetadata, CapabilityResult

if TYPE_CHECKING:
    from voxmind.types import AgentContext

PLAN_STEPS = (
    "Analyze the request",
    "Break down into actionable items",
    "Execute the plan",
    "Review results",
)


class PlanTaskCapability(Capability):
    kind = "planning"
    source = "task_planner"

    def __init__(self) -> None:
        super().__init__(
            "plan_task",
            "Create a step-by-step plan for a complex task before working on it.",
            {
                "type": "object",
                "properties": {
                    "content": {"type": "string", "description": "The task to plan"},
                },
                "required": ["content"],
            },
            name="Plan Task",
        )

    async def _run(self, params: dict[str, Any], context: AgentContext) -> CapabilityResult:
        error = validate_tool_input(self.parameters, params)
        if error:
            return CapabilityResult(
                success=False,
                error=error,
                metadata=CapabilityMetadata(confidence=0.0, source=self.source),
            )
        plan = {"objective": params["content"], "steps": list(PLAN_STEPS)}
        return CapabilityResult(
            success=True,
            data=plan,
            metadata=CapabilityMetadata(confidence=0.7, source=self.source),
        )
