"""Tests for voxmind.capabilities.registry: registration and dispatch surface."""

from __future__ import annotations

import pytest

from voxmind.capabilities.registry import Capability, CapabilityRegistry
from voxmind.types import CapabilityMetadata, CapabilityResult


class EchoCapability(Capability):
    source = "echo"

    async def _run(self, params, context):
        return CapabilityResult(success=True, data=params, metadata=CapabilityMetadata(confidence=0.5))


class ExplodingCapability(Capability):
    kind = "planning"
    source = "boom"

    async def _run(self, params, context):
        raise RuntimeError("kaboom")


def test_register_and_lookup():
    registry = CapabilityRegistry()
    echo = EchoCapability("echo", "Echo params back")
    registry.register(echo)
    assert registry.get("echo") is echo
    assert "echo" in registry
    assert len(registry) == 1
    assert registry.get("missing") is None


def test_duplicate_id_rejected_unless_override():
    registry = CapabilityRegistry()
    registry.register(EchoCapability("echo", "first"))
    with pytest.raises(ValueError, match="already registered"):
        registry.register(EchoCapability("echo", "second"))

    replacement = EchoCapability("echo", "third")
    registry.register(replacement, allow_override=True)
    assert registry.get("echo") is replacement
    assert len(registry) == 1


def test_unregister():
    registry = CapabilityRegistry()
    registry.register(EchoCapability("echo", "x"))
    assert registry.unregister("echo") is True
    assert registry.unregister("echo") is False


def test_list_by_kind_and_api_tools():
    registry = CapabilityRegistry()
    registry.register(EchoCapability("echo", "Echo", {"type": "object", "properties": {"a": {"type": "string"}}}))
    registry.register(ExplodingCapability("boom", "Fails"))

    assert [c.id for c in registry.list_capabilities("planning")] == ["boom"]
    assert registry.ids() == ["echo", "boom"]

    tools = registry.api_tools()
    assert tools[0] == {
        "type": "function",
        "function": {
            "name": "echo",
            "description": "Echo",
            "parameters": {"type": "object", "properties": {"a": {"type": "string"}}},
        },
    }
    assert tools[1]["function"]["parameters"] == {"type": "object", "properties": {}}


@pytest.mark.asyncio
async def test_execute_times_and_tags_source(agent_context):
    result = await EchoCapability("echo", "x").execute({"k": "v"}, agent_context)
    assert result.success is True
    assert result.data == {"k": "v"}
    assert result.metadata.source == "echo"
    assert result.metadata.execution_time >= 0.0


@pytest.mark.asyncio
async def test_execute_turns_exception_into_failed_result(agent_context):
    result = await ExplodingCapability("boom", "x").execute({}, agent_context)
    assert result.success is False
    assert result.error == "kaboom"
    assert result.metadata.confidence == 0.0
    assert result.metadata.source == "boom"


def test_payload_shape():
    ok = CapabilityResult(success=True, data={"n": 1}, metadata=CapabilityMetadata(confidence=0.9, source="s"))
    bad = CapabilityResult(success=False, error="nope")
    assert ok.to_payload() == {
        "success": True,
        "data": {"n": 1},
        "metadata": {"execution_time": 0.0, "confidence": 0.9, "source": "s"},
    }
    assert bad.to_payload()["error"] == "nope"
    assert "data" not in bad.to_payload()


def test_capability_without_run_cannot_be_built():
    class Incomplete(Capability):
        pass

    with pytest.raises(TypeError):
        Capability("bare", "no behavior")
    with pytest.raises(TypeError):
        Incomplete("half", "still no behavior")
