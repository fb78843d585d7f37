"""
Shared fixtures for the VoxMind test suite.

Provides a default config, a fake memory engine and a sample request
context so individual test modules can focus on behavior rather than setup.
"""

from __future__ import annotations

import pytest

from voxmind.config import VoxMindConfig
from voxmind.types import AgentContext, ConversationMessage, GraphContext

from tests.fakes import FakeMemoryEngine, make_config


@pytest.fixture()
def config(tmp_path) -> VoxMindConfig:
    return make_config(tmp_path)


@pytest.fixture()
def fake_engine() -> FakeMemoryEngine:
    return FakeMemoryEngine()


@pytest.fixture()
def agent_context(config) -> AgentContext:
    return AgentContext(
        user_id="tester",
        session_id="session-1",
        conversation_history=[ConversationMessage(role="user", content="Hello there")],
        working_memory={},
        capabilities=[],
        config=config,
    )


@pytest.fixture()
def graph_context() -> GraphContext:
    return GraphContext(user_id="tester", session_id="session-1")
