"""
Tool-call loop: drives one model exchange to a final answer.

The loop alternates between asking the model for a reply and running the
capabilities it asks for, until the model answers without requesting any
tool or the iteration budget is spent:

    1. Send the message sequence plus the full tool catalog to the model
    2. Append the assistant reply (even when it also asks for tools)
    3. Run each requested capability in order, one at a time
    4. Append every result, success or failure, as a tool message
    5. Repeat until a reply carries no tool calls

Tool failures never end the loop: an unknown capability or a failing one is
reported back to the model as data so it can correct itself on the next turn.
When the budget runs out the loop returns a fixed fallback answer, so a
request always finishes within ``MAX_TOOL_ITERATIONS`` model calls.
With ``max_tool_calls`` set, calls past that count in one run are not
executed; each gets an error result telling the model the limit was hit.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

import structlog

from voxmind._utils import new_id
from voxmind.types import ReasoningStep

if TYPE_CHECKING:
    from voxmind.api.provider import LLMProvider, ToolCall
    from voxmind.capabilities.registry import CapabilityRegistry
    from voxmind.config import PersonalityConfig
    from voxmind.types import AgentContext, ConversationMessage

logger = structlog.get_logger(__name__)

MAX_TOOL_ITERATIONS = 5
HISTORY_WINDOW = 10
REFLECTION_CONFIDENCE = 0.95
FALLBACK_RESPONSE = "Unable to generate response after maximum iterations."

_CAPABILITY_LINES = (
    "Accessing and analyzing a knowledge graph of information",
    "Providing technical guidance and strategic advice",
    "Managing projects and breaking down complex tasks",
    "Learning from conversations and building context",
)


def build_system_message(personality: PersonalityConfig) -> str:
    """Persona prompt that opens every exchange."""
    lines = [
        f"You are {personality.name}, a {personality.role}. "
        f"You specialize in: {', '.join(personality.expertise)}. ",
        "",
        "Your capabilities include:",
        *(f"- {line}" for line in _CAPABILITY_LINES),
        f"- Communicating in a {personality.communication_style} manner",
        "",
        "Respond naturally and helpfully to the user's current message.",
    ]
    return "\n".join(lines)


def build_context_message(analysis: Optional[dict[str, Any]]) -> Optional[str]:
    """Summarize the analysis step for the model, or None if nothing stands out."""
    if not analysis:
        return None

    parts: list[str] = []
    if analysis.get("intent"):
        parts.append(f"User intent appears to be: {analysis['intent']}")
    if analysis.get("complexity"):
        parts.append(f"Request complexity: {analysis['complexity']}")
    if analysis.get("urgency"):
        parts.append(f"Urgency level: {analysis['urgency']}")
    if analysis.get("topics"):
        parts.append(f"Detected topics: {', '.join(analysis['topics'])}")

    entities = analysis.get("entities") or []
    if entities:
        names = [str(e.get("name") or e.get("id", "")) for e in entities[:5]]
        parts.append(f"Related entities from knowledge base: {', '.join(names)}")
    if analysis.get("related_entities", 0) > 0:
        parts.append(f"Found {analysis['related_entities']} related entities in the knowledge base")

    if analysis.get("related_clusters", 0) > 0:
        parts.append(f"Found {analysis['related_clusters']} related memory clusters")
    if analysis.get("cluster_themes"):
        parts.append(f"Relevant cluster themes: {', '.join(analysis['cluster_themes'])}")

    if analysis.get("contextual_memories", 0) > 0:
        parts.append(
            f"Retrieved {analysis['contextual_memories']} contextual memories "
            "from conversation history"
        )

    if not parts:
        return None
    return "Current analysis:\n" + "\n".join(parts)


def build_messages(
    history: Sequence[ConversationMessage],
    personality: PersonalityConfig,
    analysis: Optional[dict[str, Any]] = None,
) -> list[dict[str, Any]]:
    """Initial message sequence: persona, recent dialogue, analysis summary."""
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": build_system_message(personality)}
    ]
    for msg in list(history)[-HISTORY_WINDOW:]:
        if msg.role in ("user", "assistant"):
            messages.append({"role": msg.role, "content": msg.content})

    context_message = build_context_message(analysis)
    if context_message:
        messages.append({"role": "system", "content": context_message})
    return messages


def _serialize(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


@dataclass
class LoopResult:
    """Everything one loop run produced."""

    text: str
    step: ReasoningStep
    iterations: int = 0
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    capabilities_used: list[str] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    was_truncated: bool = False
    tokens_used: Optional[int] = None
    elapsed_seconds: float = 0.0

    @property
    def used_tools(self) -> bool:
        return bool(self.tool_calls)


class ToolCallLoop:
    """Bounded model/tool exchange over a capability registry."""

    def __init__(
        self,
        llm: LLMProvider,
        registry: CapabilityRegistry,
        *,
        thinking: bool = False,
        on_capability_used: Optional[Callable[[str], None]] = None,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        max_tool_calls: Optional[int] = None,
    ):
        self._llm = llm
        self._registry = registry
        self._thinking = thinking
        self._on_capability_used = on_capability_used
        self._max_iterations = max(1, int(max_iterations))
        self._max_tool_calls = max(1, int(max_tool_calls)) if max_tool_calls is not None else None

        self._total_runs = 0
        self._total_iterations = 0
        self._total_tool_calls = 0
        self._total_truncated = 0

    async def run(self, context: AgentContext, analysis: Optional[ReasoningStep] = None) -> LoopResult:
        start = time.monotonic()
        self._total_runs += 1

        analysis_output = analysis.output if analysis is not None else None
        messages = build_messages(
            context.conversation_history,
            context.config.personality,
            analysis_output if isinstance(analysis_output, dict) else None,
        )
        tools = self._registry.api_tools()

        final_text: Optional[str] = None
        all_calls: list[dict[str, Any]] = []
        used: list[str] = []
        tokens: Optional[int] = None
        iteration = 0
        dispatched = 0

        while iteration < self._max_iterations:
            iteration += 1
            self._total_iterations += 1

            reply = await self._llm.generate_text(messages, tools, thinking=self._thinking)
            if reply.tokens_used is not None:
                tokens = (tokens or 0) + reply.tokens_used

            call_ids = [new_id("call") for _ in reply.tool_calls]
            assistant: dict[str, Any] = {"role": "assistant", "content": reply.reply}
            if reply.has_tool_calls:
                assistant["tool_calls"] = [
                    {"id": call_id, "name": call.name, "arguments": call.arguments}
                    for call_id, call in zip(call_ids, reply.tool_calls)
                ]
            messages.append(assistant)

            if not reply.has_tool_calls:
                final_text = reply.reply
                logger.debug(
                    "tool_call_loop.final_answer",
                    iteration=iteration,
                    response_length=len(final_text),
                )
                break

            for call_id, call in zip(call_ids, reply.tool_calls):
                self._total_tool_calls += 1
                all_calls.append({"id": call_id, "name": call.name, "arguments": call.arguments})
                if self._max_tool_calls is not None and dispatched >= self._max_tool_calls:
                    logger.warning(
                        "tool_call_loop.capability_limit",
                        tool=call.name,
                        limit=self._max_tool_calls,
                    )
                    payload = {
                        "error": f"Capability limit reached: at most {self._max_tool_calls} calls per request"
                    }
                else:
                    dispatched += 1
                    payload = await self._dispatch(call, context, used)
                messages.append({
                    "role": "tool",
                    "content": _serialize(payload),
                    "tool_call_id": call_id,
                    "name": call.name,
                })

        truncated = final_text is None
        if truncated:
            self._total_truncated += 1
            final_text = FALLBACK_RESPONSE
            logger.warning(
                "tool_call_loop.max_iterations",
                max=self._max_iterations,
                tool_calls=len(all_calls),
            )

        step = ReasoningStep(
            type="reflection",
            description="Generated response using LLM with tool calling loop",
            input={"analysis": analysis_output},
            output={"response": final_text},
            confidence=REFLECTION_CONFIDENCE,
        )
        return LoopResult(
            text=final_text,
            step=step,
            iterations=iteration,
            tool_calls=all_calls,
            capabilities_used=used,
            messages=messages,
            was_truncated=truncated,
            tokens_used=tokens,
            elapsed_seconds=time.monotonic() - start,
        )

    async def _dispatch(self, call: ToolCall, context: AgentContext, used: list[str]) -> dict[str, Any]:
        """Run one requested capability; any failure comes back as an error payload."""
        capability = self._registry.get(call.name)
        if capability is None:
            logger.warning("tool_call_loop.unknown_capability", tool=call.name)
            return {"error": f"Unknown capability: {call.name}"}

        try:
            result = await capability.execute(call.arguments, context)
        except Exception as exc:
            logger.error("tool_call_loop.capability_failed", tool=call.name, error=str(exc))
            return {"error": str(exc) or type(exc).__name__}

        if call.name not in used:
            used.append(call.name)
        if self._on_capability_used is not None:
            try:
                self._on_capability_used(call.name)
            except Exception as callback_error:
                logger.warning(
                    "tool_call_loop.callback_failed",
                    callback="on_capability_used",
                    error=str(callback_error),
                )

        logger.debug(
            "tool_call_loop.tool_executed",
            tool=call.name,
            success=result.success,
        )
        return result.to_payload()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_iterations": self._total_iterations,
            "total_tool_calls": self._total_tool_calls,
            "total_truncated": self._total_truncated,
            "avg_iterations_per_run": self._total_iterations / max(1, self._total_runs),
        }
