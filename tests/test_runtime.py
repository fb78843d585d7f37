"""
Tests for voxmind.runtime: the end-to-end request pipeline.

Every collaborator is a test double: a scripted LLM, the fake memory engine
and a speech stub, so the pipeline runs deterministically and offline.
"""

from __future__ import annotations

import asyncio

import pytest

from voxmind.config import FeatureConfig, LimitsConfig, ToolsConfig
from voxmind.errors import ConfigurationError
from voxmind.harness.loop import FALLBACK_RESPONSE
from voxmind.runtime import GREETING, MEMORY_UNAVAILABLE_RESPONSE, AgentRuntime
from voxmind.types import DEFAULT_USER_ID, GraphContext, UserInput

from tests.fakes import (
    FailingLLM,
    FakeMemoryEngine,
    ScriptedLLM,
    StubSpeech,
    make_config,
    text_reply,
    tool_reply,
)


class SlowLLM(ScriptedLLM):
    def __init__(self, replies, delay: float):
        super().__init__(replies)
        self.delay = delay

    async def generate_text(self, messages, tools=None, *, thinking=False):
        await asyncio.sleep(self.delay)
        return await super().generate_text(messages, tools, thinking=thinking)


def _runtime(config, llm=None, engine=None, speech=None, *, no_memory=False):
    llm = llm or ScriptedLLM([text_reply("Happy to help.")])
    engine = engine or FakeMemoryEngine()
    return AgentRuntime(
        config,
        llm=llm,
        embedder=llm,
        memory_factory=(lambda cfg: None) if no_memory else (lambda cfg: engine),
        speech=speech or StubSpeech(),
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_text_request_end_to_end(config, fake_engine):
    llm = ScriptedLLM([text_reply("Happy to help.", tokens=30)])
    runtime = _runtime(config, llm, fake_engine)

    response = await runtime.process_request("What is Alice working on?", {"user_id": "u1"})

    assert response.content == "Happy to help."
    assert response.type == "text"
    assert [s.type for s in response.reasoning] == ["analysis", "reflection"]
    assert response.metadata.confidence == pytest.approx(0.8375)
    assert response.metadata.tokens_used == 30
    assert response.metadata.request_id.startswith("agent_")
    assert response.metadata.session_id.startswith("session_")
    assert response.metadata.processing_time >= 0.0

    history = runtime.conversation.get_history()
    assert [(m.role, m.content) for m in history] == [
        ("user", "What is Alice working on?"),
        ("assistant", "Happy to help."),
    ]

    metrics = runtime.get_metrics()
    assert metrics.total_requests == 1
    assert metrics.success_rate == 1.0
    assert metrics.memory_usage.conversation_history == 2


@pytest.mark.asyncio
async def test_user_turn_is_in_prompt_and_analysis_reaches_model(config, fake_engine):
    llm = ScriptedLLM([text_reply("ok")])
    runtime = _runtime(config, llm, fake_engine)

    await runtime.process_request("Is the project on track?")

    messages = llm.calls[0]
    assert messages[0]["role"] == "system"
    assert messages[1] == {"role": "user", "content": "Is the project on track?"}
    context = messages[-1]["content"]
    assert context.startswith("Current analysis:")
    assert "User intent appears to be: question" in context
    assert "Detected topics: project_management" in context
    assert "Related entities from knowledge base: Alice, Voxmind" in context
    assert "Relevant cluster themes: Alice, Projects, Meetings" in context


@pytest.mark.asyncio
async def test_analysis_step_contents(config, fake_engine):
    runtime = _runtime(config, engine=fake_engine)

    response = await runtime.process_request("Please review the code asap")
    analysis = response.reasoning[0]

    assert analysis.confidence == 0.8
    assert analysis.output["intent"] == "request"
    assert analysis.output["urgency"] == "high"
    assert analysis.output["complexity"] == "low"
    assert analysis.output["related_entities"] == 2
    assert analysis.output["semantic_matches"] == 2
    assert analysis.output["contextual_memories"] == 1
    assert analysis.output["related_clusters"] == 2
    assert analysis.output["cluster_themes"] == ["Alice, Projects", "Meetings"]

    query = fake_engine.queries[0]
    assert query["embedding"] == [1.0, 0.0, 0.0]
    assert (query["limit"], query["max_depth"]) == (10, 2)
    history, k = fake_engine.contextual_calls[0]
    assert k == 3 and history[-1].content == "Please review the code asap"
    assert fake_engine.related_calls[0][1] == 3


@pytest.mark.asyncio
async def test_context_defaults(config, fake_engine):
    runtime = _runtime(config, engine=fake_engine)
    seen = {}
    original = fake_engine.add_memory

    async def capture(content, context, embedding=None):
        seen["context"] = context
        return await original(content, context, embedding)

    fake_engine.add_memory = capture
    await runtime.process_request("hi", GraphContext(session_id="s-42", relevant_entities=["Alice"]))

    ctx = seen["context"]
    assert ctx.user_id == DEFAULT_USER_ID
    assert ctx.session_id == "s-42"
    assert ctx.source == "conversation"
    assert ctx.relevant_entities == ["Alice"]


@pytest.mark.asyncio
async def test_tool_use_is_counted(config, fake_engine):
    llm = ScriptedLLM([tool_reply(("plan_task", {"content": "launch"})), text_reply("Here is a plan.")])
    runtime = _runtime(config, llm, fake_engine)

    response = await runtime.process_request("Help me plan the launch")

    assert response.content == "Here is a plan."
    assert response.capabilities_used == ["plan_task"]
    assert runtime.get_metrics().capability_usage == {"plan_task": 1}


@pytest.mark.asyncio
async def test_exhausted_loop_still_answers(config, fake_engine):
    llm = ScriptedLLM([tool_reply(("plan_task", {"content": "x"}))])
    runtime = _runtime(config, llm, fake_engine)

    response = await runtime.process_request("loop forever")

    assert response.content == FALLBACK_RESPONSE
    assert len(llm.calls) == 5
    assert runtime.get_metrics().capability_usage["plan_task"] == 5


@pytest.mark.asyncio
async def test_capability_cap_from_limits(tmp_path, fake_engine):
    config = make_config(tmp_path, limits=LimitsConfig(max_capabilities_per_request=2))
    llm = ScriptedLLM([tool_reply(("plan_task", {"content": "x"}))])
    runtime = _runtime(config, llm, fake_engine)

    response = await runtime.process_request("loop forever")

    assert response.content == FALLBACK_RESPONSE
    assert runtime.get_metrics().capability_usage["plan_task"] == 2
    stats = runtime.loop_stats
    assert stats["total_runs"] == 1
    assert stats["total_tool_calls"] == 5
    assert stats["total_truncated"] == 1


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("request_input", ["", "   ", {}, UserInput()])
async def test_empty_input_becomes_greeting(config, fake_engine, request_input):
    runtime = _runtime(config, engine=fake_engine)
    await runtime.process_request(request_input)
    assert runtime.conversation.get_history()[0].content == GREETING


@pytest.mark.asyncio
async def test_audio_input_is_transcribed(config, fake_engine):
    speech = StubSpeech(transcript="remind me about the meeting")
    runtime = _runtime(config, engine=fake_engine, speech=speech)

    await runtime.process_request({"audio": "/tmp/clip.wav"})

    assert speech.transcribed == ["/tmp/clip.wav"]
    assert runtime.conversation.get_history()[0].content == "remind me about the meeting"


@pytest.mark.asyncio
async def test_transcription_marker_flows_through(config, fake_engine):
    marker = "__TRANSCRIPTION_ERROR__: no speech could be transcribed (audio: /tmp/a.wav)"
    runtime = _runtime(config, engine=fake_engine, speech=StubSpeech(transcript=marker))

    response = await runtime.process_request(UserInput(audio="/tmp/a.wav"))

    assert response.content == "Happy to help."
    assert runtime.conversation.get_history()[0].content == marker


@pytest.mark.asyncio
async def test_speak_attaches_audio(config, fake_engine):
    speech = StubSpeech(audio_path="/tmp/out.mp3")
    runtime = _runtime(config, engine=fake_engine, speech=speech)

    response = await runtime.process_request(UserInput(text="read this aloud", speak=True))

    assert response.type == "mixed"
    assert response.audio_path == "/tmp/out.mp3"
    assert speech.synthesized == ["Happy to help."]


@pytest.mark.asyncio
async def test_failed_synthesis_keeps_text_response(config, fake_engine):
    runtime = _runtime(config, engine=fake_engine, speech=StubSpeech(audio_path=None))
    response = await runtime.process_request({"text": "say it", "speak": True})
    assert response.type == "text"
    assert response.audio_path is None


@pytest.mark.asyncio
async def test_audio_rejected_when_multi_modal_disabled(tmp_path, fake_engine):
    config = make_config(tmp_path, features=FeatureConfig(enable_multi_modal=False))
    runtime = _runtime(config, engine=fake_engine)

    response = await runtime.process_request({"audio": "/tmp/a.wav"})

    assert response.metadata.confidence == 0.0
    assert "Audio input and output are disabled" in response.content
    assert runtime.get_metrics().errors.by_type == {"validation_error": 1}


# ---------------------------------------------------------------------------
# Degraded paths
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_memory_write_retried_without_embedding(config, fake_engine):
    fake_engine.add_failures = 1
    runtime = _runtime(config, engine=fake_engine)

    response = await runtime.process_request("Remember that Alice leads Apollo")

    assert [emb for _, emb in fake_engine.added] == [[1.0, 0.0, 0.0], None]
    assert response.content == "Happy to help."
    assert runtime.get_metrics().success_rate == 1.0


@pytest.mark.asyncio
async def test_memory_write_failure_is_swallowed(config, fake_engine):
    fake_engine.add_failures = 2
    runtime = _runtime(config, engine=fake_engine)

    response = await runtime.process_request("Remember this")

    assert len(fake_engine.added) == 2
    assert response.content == "Happy to help."
    assert runtime.get_metrics().errors.total == 0


@pytest.mark.asyncio
async def test_embedding_failure_degrades_gracefully(config, fake_engine):
    llm = ScriptedLLM([text_reply("fine")])
    llm.fail_embeddings = True
    runtime = _runtime(config, llm, fake_engine)

    response = await runtime.process_request("anything")

    assert response.content == "fine"
    assert fake_engine.added[0][1] is None
    assert fake_engine.queries[0]["embedding"] is None
    assert fake_engine.related_calls == []
    assert response.reasoning[0].output["semantic_matches"] == 0


@pytest.mark.asyncio
async def test_enrichment_failures_yield_empty_results(config, fake_engine):
    fake_engine.fail_query = True
    fake_engine.fail_contextual = True
    fake_engine.fail_related = True
    runtime = _runtime(config, engine=fake_engine)

    response = await runtime.process_request("still works?")

    output = response.reasoning[0].output
    assert output["entities"] == []
    assert output["contextual_memories"] == 0
    assert output["related_clusters"] == 0
    assert response.content == "Happy to help."


@pytest.mark.asyncio
async def test_missing_memory_engine_short_circuits(config):
    llm = ScriptedLLM([text_reply("never used")])
    runtime = _runtime(config, llm, no_memory=True)

    response = await runtime.process_request("hello")

    assert response.content == MEMORY_UNAVAILABLE_RESPONSE
    assert [s.type for s in response.reasoning] == ["error"]
    assert response.reasoning[0].description == "Memory instance is not initialized"
    assert response.metadata.confidence == 0.0
    assert llm.calls == []

    metrics = runtime.get_metrics()
    assert metrics.success_rate == 0.0
    assert metrics.errors.by_type == {"memory_error": 1}


@pytest.mark.asyncio
async def test_llm_failure_becomes_apology(config, fake_engine):
    runtime = _runtime(config, FailingLLM(ConnectionError("connection refused")), fake_engine)

    response = await runtime.process_request("hello")

    assert response.content == (
        "I apologize, but I encountered an error while processing your request: "
        "connection refused"
    )
    assert response.metadata.confidence == 0.0
    metrics = runtime.get_metrics()
    assert metrics.total_requests == 1
    assert metrics.success_rate == 0.0
    assert metrics.errors.by_type == {"network_error": 1}


@pytest.mark.asyncio
async def test_deadline_enforced_when_enabled(tmp_path, fake_engine):
    config = make_config(
        tmp_path,
        limits=LimitsConfig(enforce_processing_deadline=True, max_processing_time=50),
    )
    runtime = _runtime(config, SlowLLM([text_reply("late")], delay=1.0), fake_engine)

    response = await runtime.process_request("hurry")

    assert "maximum processing time of 50 ms" in response.content
    assert response.metadata.confidence == 0.0
    assert runtime.get_metrics().errors.by_type == {"processing_error": 1}


@pytest.mark.asyncio
async def test_deadline_during_synthesis_counts_request_once(tmp_path, fake_engine):
    config = make_config(
        tmp_path,
        limits=LimitsConfig(enforce_processing_deadline=True, max_processing_time=200),
    )
    runtime = _runtime(config, engine=fake_engine, speech=StubSpeech(synth_delay=1.0))

    response = await runtime.process_request({"text": "read aloud", "speak": True})

    metrics = runtime.get_metrics()
    assert "maximum processing time of 200 ms" in response.content
    assert metrics.total_requests == 1
    assert metrics.success_rate == 0.0
    assert metrics.errors.by_type == {"processing_error": 1}


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_initialize_runs_once(config):
    created = []

    def factory(cfg):
        engine = FakeMemoryEngine()
        created.append(engine)
        return engine

    runtime = AgentRuntime(config, llm=ScriptedLLM([text_reply("x")]), memory_factory=factory,
                           speech=StubSpeech())
    await asyncio.gather(runtime.initialize(), runtime.initialize(), runtime.initialize())

    assert len(created) == 1
    assert created[0].initialized is True
    assert runtime.is_initialized is True
    assert len(runtime.clustering.clusters) == 2


@pytest.mark.asyncio
async def test_initialize_failure(config):
    def factory(cfg):
        raise RuntimeError("disk full")

    runtime = AgentRuntime(config, llm=ScriptedLLM([text_reply("x")]), memory_factory=factory,
                           speech=StubSpeech())

    with pytest.raises(ConfigurationError) as excinfo:
        await runtime.initialize()
    assert excinfo.value.code == "INIT_FAILED"
    assert runtime.is_initialized is False

    response = await runtime.process_request("hello")
    assert "Failed to initialize agent runtime: disk full" in response.content
    assert runtime.get_metrics().errors.by_type == {"configuration_error": 1}


@pytest.mark.asyncio
async def test_filesystem_tools_registered_when_enabled(tmp_path, fake_engine):
    config = make_config(tmp_path, tools=ToolsConfig(enabled=True, allowed_paths=[str(tmp_path)]))
    runtime = _runtime(config, engine=fake_engine)

    assert "read_file" not in runtime.registry
    await runtime.initialize()
    for tool_id in ("search_files", "read_file", "create_file", "modify_file", "list_directory"):
        assert tool_id in runtime.registry


@pytest.mark.asyncio
async def test_core_capabilities_registered_at_construction(config):
    runtime = _runtime(config)
    assert set(runtime.registry.ids()) == {
        "query_memory",
        "create_clusters",
        "get_dual_graph_stats",
        "find_related_clusters",
        "get_contextual_memories",
        "analyze_entities",
        "plan_task",
    }


def test_planning_capability_follows_feature_flag(tmp_path):
    runtime = _runtime(make_config(tmp_path, features=FeatureConfig(enable_planning=False)))
    assert "plan_task" not in runtime.registry
    assert "query_memory" in runtime.registry
    assert runtime.loop_stats == {}


# ---------------------------------------------------------------------------
# Concurrency and state
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_same_session_requests_are_serialized(config, fake_engine):
    runtime = _runtime(config, SlowLLM([text_reply("answer")], delay=0.02), fake_engine)
    ctx = {"session_id": "shared"}

    await asyncio.gather(
        runtime.process_request("first", ctx),
        runtime.process_request("second", ctx),
    )

    roles = [(m.role, m.content) for m in runtime.conversation.get_history()]
    assert roles == [
        ("user", "first"),
        ("assistant", "answer"),
        ("user", "second"),
        ("assistant", "answer"),
    ]


@pytest.mark.asyncio
async def test_clear_keeps_metrics(config, fake_engine):
    runtime = _runtime(config, engine=fake_engine)
    await runtime.process_request("hello")
    runtime.working_memory["note"] = "x"

    runtime.clear()

    assert len(runtime.conversation) == 0
    assert runtime.working_memory == {}
    assert runtime.clustering.clusters == []
    assert runtime.get_metrics().total_requests == 1


@pytest.mark.asyncio
async def test_get_state_snapshot(config, fake_engine):
    runtime = _runtime(config, engine=fake_engine)
    await runtime.process_request("hello")

    state = runtime.get_state()
    assert len(state.conversation_history) == 2
    assert state.active_plans == []
    assert state.metrics.total_requests == 1
    assert "plan_task" in state.capabilities
    assert state.clustering["cluster_count"] == 2
    assert "anthropic_api_key" not in state.config["llm"]

    state.conversation_history.clear()
    assert len(runtime.conversation) == 2


@pytest.mark.asyncio
async def test_close_releases_collaborators(config):
    llm = ScriptedLLM([text_reply("x")])
    speech = StubSpeech()
    runtime = _runtime(config, llm, speech=speech)
    await runtime.close()
    assert llm.closed is True
    assert speech.closed is True
