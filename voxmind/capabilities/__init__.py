"""Capabilities: everything the agent can be asked to do, behind one interface."""
from voxmind.capabilities.memory import MemoryBinding, memory_capabilities
from voxmind.capabilities.planning import PlanTaskCapability
from voxmind.capabilities.registry import Capability, CapabilityRegistry
from voxmind.capabilities.tools import ToolCapability, validate_tool_input

__all__ = [
    "Capability",
    "CapabilityRegistry",
    "MemoryBinding",
    "PlanTaskCapability",
    "ToolCapability",
    "memory_capabilities",
    "validate_tool_input",
]
