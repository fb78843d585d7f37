"""Model providers."""
from voxmind.api.provider import (
    AnthropicProvider,
    LLMProvider,
    LLMReply,
    LMStudioProvider,
    OllamaProvider,
    ToolCall,
    build_embedder,
    build_provider,
)

__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "LLMReply",
    "LMStudioProvider",
    "OllamaProvider",
    "ToolCall",
    "build_embedder",
    "build_provider",
]
