"""
VoxMind: request-processing core for a voice-capable conversational agent.

One user turn (typed text or a transcribed audio file) flows through a single
pipeline: context is assembled from a knowledge-graph memory and recent
dialogue, an LLM is driven through a bounded tool-use loop, and a structured
response comes back while conversation history and streaming metrics are
updated.

Layers (bottom to top):
    1. Config, logging, errors and shared types
    2. Conversation log and metrics tracker
    3. LLM providers (Ollama, LM Studio, Anthropic) with retries
    4. Memory engine binding and clustering coordinator
    5. Capability registry (tools, memory queries, planning)
    6. Tool-call loop
    7. Agent runtime
"""

__version__ = "0.1.0"
