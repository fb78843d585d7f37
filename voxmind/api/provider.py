"""
LLM providers: the agent's connection to a language model.

The runtime talks to models through one narrow contract:

    generate_text(messages, tools) -> LLMReply(reply, tool_calls)
    generate_embeddings(text)      -> list[float]

Messages use a provider-neutral shape (OpenAI-style role/content dicts, with
``tool_calls`` on assistant turns and ``tool_call_id`` on tool turns). Each
provider translates that shape to its own wire format:

- ``OllamaProvider``: a local Ollama server (/api/chat, /api/embed)
- ``LMStudioProvider``: any OpenAI-compatible server such as LM Studio
  (/v1/chat/completions, /v1/embeddings)
- ``AnthropicProvider``: the Claude Messages API (text only, no embeddings)

Every network call goes through ``with_retries`` so transient failures are
absorbed; what is left is raised as ``ProviderError``.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import anthropic
import httpx
import structlog

from voxmind.config import EmbeddingConfig, LLMConfig
from voxmind.errors import ConfigurationError, ProviderError
from voxmind.harness.retry import RetryConfig, with_retries

logger = structlog.get_logger(__name__)

# Reasoning models (qwen3, deepseek-r1) may inline their scratchpad.
_THINK_BLOCK_RE = re.compile(r"<think>[\s\S]*?</think>\s*", re.IGNORECASE)


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class LLMReply:
    reply: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tokens_used: Optional[int] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def strip_thinking(text: str) -> str:
    return _THINK_BLOCK_RE.sub("", text or "").strip()


def _parse_arguments(raw: Any, tool_name: str) -> dict[str, Any]:
    """Tool arguments arrive as a dict (Ollama) or a JSON string (OpenAI)."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("provider.malformed_tool_arguments", tool_name=tool_name)
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class LLMProvider(ABC):
    """Interface every model backend implements."""

    name: str = "base"

    @abstractmethod
    async def generate_text(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        *,
        thinking: bool = False,
    ) -> LLMReply:
        """Return the model's reply to *messages*, with any requested tool calls."""

    @abstractmethod
    async def generate_embeddings(self, text: str) -> list[float]:
        """Return an embedding vector for *text*."""

    async def close(self) -> None:
        return None


class _HTTPProvider(LLMProvider):
    """Shared plumbing for providers spoken to over plain HTTP JSON."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        embedding_model: Optional[str] = None,
        timeout: float = 120.0,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self.model = model
        self.embedding_model = embedding_model or model
        self._retry_config = retry_config or RetryConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)

        # Telemetry
        self._total_calls = 0
        self._total_tokens = 0

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async def _send() -> dict[str, Any]:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
            return response.json()

        start = time.monotonic()
        try:
            data = await with_retries(_send, config=self._retry_config)
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"{self.name} returned HTTP {exc.response.status_code}",
                code="HTTP_STATUS",
                details={"path": path, "status": exc.response.status_code},
            ) from exc
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise ProviderError(
                f"{self.name} request failed: {exc}",
                code="REQUEST_FAILED",
                details={"path": path, "base_url": self._base_url},
            ) from exc
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} returned invalid JSON",
                code="INVALID_RESPONSE",
                details={"path": path},
            ) from exc

        self._total_calls += 1
        logger.debug(
            "provider.request_complete",
            provider=self.name,
            path=path,
            elapsed_seconds=round(time.monotonic() - start, 2),
        )
        return data

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def telemetry(self) -> dict[str, Any]:
        return {"provider": self.name, "calls": self._total_calls, "tokens": self._total_tokens}


class OllamaProvider(_HTTPProvider):
    name = "ollama"

    @staticmethod
    def _to_wire(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        wire = []
        for msg in messages:
            item: dict[str, Any] = {"role": msg["role"], "content": msg.get("content") or ""}
            if msg.get("tool_calls"):
                item["tool_calls"] = [
                    {"function": {"name": call["name"], "arguments": call.get("arguments", {})}}
                    for call in msg["tool_calls"]
                ]
            if msg["role"] == "tool" and msg.get("name"):
                item["tool_name"] = msg["name"]
            wire.append(item)
        return wire

    async def generate_text(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        *,
        thinking: bool = False,
    ) -> LLMReply:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self._to_wire(messages),
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
        if thinking:
            payload["think"] = True

        data = await self._post_json("/api/chat", payload)
        message = data.get("message") or {}
        calls = []
        for raw in message.get("tool_calls") or []:
            fn = raw.get("function") or {}
            name = fn.get("name")
            if not name:
                continue
            calls.append(
                ToolCall(name=name, arguments=_parse_arguments(fn.get("arguments"), name), id=raw.get("id"))
            )

        tokens = None
        if "eval_count" in data or "prompt_eval_count" in data:
            tokens = int(data.get("prompt_eval_count", 0)) + int(data.get("eval_count", 0))
            self._total_tokens += tokens
        return LLMReply(reply=strip_thinking(message.get("content", "")), tool_calls=calls, tokens_used=tokens)

    async def generate_embeddings(self, text: str) -> list[float]:
        data = await self._post_json("/api/embed", {"model": self.embedding_model, "input": text})
        embeddings = data.get("embeddings") or []
        if not embeddings or not embeddings[0]:
            raise ProviderError("ollama returned no embedding", code="EMPTY_EMBEDDING")
        return [float(v) for v in embeddings[0]]


class LMStudioProvider(_HTTPProvider):
    """OpenAI-compatible chat and embedding endpoints."""

    name = "lmstudio"

    @staticmethod
    def _to_wire(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        wire = []
        for msg in messages:
            item: dict[str, Any] = {"role": msg["role"], "content": msg.get("content") or ""}
            if msg.get("tool_calls"):
                item["tool_calls"] = [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {
                            "name": call["name"],
                            "arguments": json.dumps(call.get("arguments", {})),
                        },
                    }
                    for call in msg["tool_calls"]
                ]
            if msg["role"] == "tool":
                item["tool_call_id"] = msg.get("tool_call_id")
            wire.append(item)
        return wire

    async def generate_text(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        *,
        thinking: bool = False,
    ) -> LLMReply:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self._to_wire(messages),
            "stream": False,
        }
        if tools:
            payload["tools"] = tools

        data = await self._post_json("/v1/chat/completions", payload)
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("lmstudio returned no choices", code="EMPTY_RESPONSE")
        message = choices[0].get("message") or {}

        calls = []
        for raw in message.get("tool_calls") or []:
            fn = raw.get("function") or {}
            name = fn.get("name")
            if not name:
                continue
            calls.append(
                ToolCall(name=name, arguments=_parse_arguments(fn.get("arguments"), name), id=raw.get("id"))
            )

        usage = data.get("usage") or {}
        tokens = usage.get("total_tokens")
        if tokens is not None:
            self._total_tokens += int(tokens)
        return LLMReply(
            reply=strip_thinking(message.get("content") or ""),
            tool_calls=calls,
            tokens_used=tokens,
        )

    async def generate_embeddings(self, text: str) -> list[float]:
        data = await self._post_json("/v1/embeddings", {"model": self.embedding_model, "input": text})
        rows = data.get("data") or []
        if not rows or not rows[0].get("embedding"):
            raise ProviderError("lmstudio returned no embedding", code="EMPTY_EMBEDDING")
        return [float(v) for v in rows[0]["embedding"]]


class AnthropicProvider(LLMProvider):
    """
    Claude Messages API backend.

    System messages are folded into the ``system`` parameter, tool turns
    become ``tool_result`` blocks, and consecutive same-role turns are merged
    because the API requires strict user/assistant alternation.
    """

    name = "anthropic"

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        if client is None and not api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY is required for the anthropic provider",
                code="MISSING_API_KEY",
            )
        self.model = model
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._retry_config = retry_config or RetryConfig()
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    @staticmethod
    def _to_wire(
        messages: list[dict[str, Any]],
    ) -> tuple[str, list[dict[str, Any]]]:
        system_parts: list[str] = []
        wire: list[dict[str, Any]] = []

        for msg in messages:
            role = msg["role"]
            content = msg.get("content") or ""
            if role == "system":
                if content:
                    system_parts.append(content)
                continue

            if role == "tool":
                blocks = [{
                    "type": "tool_result",
                    "tool_use_id": msg.get("tool_call_id"),
                    "content": content,
                }]
                role = "user"
            else:
                blocks = [{"type": "text", "text": content}] if content else []
                for call in msg.get("tool_calls") or []:
                    blocks.append({
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["name"],
                        "input": call.get("arguments", {}),
                    })
            if not blocks:
                continue

            if wire and wire[-1]["role"] == role:
                wire[-1]["content"].extend(blocks)
            else:
                wire.append({"role": role, "content": blocks})

        return "\n\n".join(system_parts), wire

    @staticmethod
    def _tools_to_wire(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        converted = []
        for tool in tools:
            fn = tool.get("function", tool)
            converted.append({
                "name": fn["name"],
                "description": fn.get("description", ""),
                "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
            })
        return converted

    async def generate_text(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        *,
        thinking: bool = False,
    ) -> LLMReply:
        system, wire = self._to_wire(messages)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._max_tokens,
            "messages": wire,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = self._tools_to_wire(tools)
        if thinking:
            # Replaying tool-use turns would require the signed thinking blocks,
            # which the neutral message shape does not carry.
            logger.debug("anthropic_provider.thinking_ignored")

        async def _create() -> Any:
            return await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._timeout,
            )

        try:
            response = await with_retries(_create, config=self._retry_config)
        except anthropic.APIError as exc:
            raise ProviderError(
                f"anthropic request failed: {exc}",
                code="REQUEST_FAILED",
                details={"status": getattr(exc, "status_code", None)},
            ) from exc
        except asyncio.TimeoutError as exc:
            raise ProviderError("anthropic request timed out", code="TIMEOUT") from exc

        texts = []
        calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(name=block.name, arguments=dict(block.input or {}), id=block.id))

        usage = getattr(response, "usage", None)
        tokens = None
        if usage is not None:
            tokens = int(usage.input_tokens) + int(usage.output_tokens)
        return LLMReply(reply="\n".join(texts).strip(), tool_calls=calls, tokens_used=tokens)

    async def generate_embeddings(self, text: str) -> list[float]:
        raise ProviderError(
            "The anthropic provider does not serve embeddings",
            code="EMBEDDINGS_UNSUPPORTED",
        )

    async def close(self) -> None:
        await self._client.close()


def build_provider(
    config: LLMConfig,
    *,
    provider: Optional[str] = None,
    embedding_model: Optional[str] = None,
) -> LLMProvider:
    """Construct the provider named by *provider* (default: ``config.provider``)."""
    name = (provider or config.provider).strip().lower()
    retry = RetryConfig.from_llm_config(config)
    if name == "ollama":
        return OllamaProvider(
            config.ollama_base_url,
            config.model,
            embedding_model=embedding_model,
            timeout=config.request_timeout_seconds,
            retry_config=retry,
        )
    if name == "lmstudio":
        return LMStudioProvider(
            config.lmstudio_base_url,
            config.model,
            embedding_model=embedding_model,
            timeout=config.request_timeout_seconds,
            retry_config=retry,
        )
    if name == "anthropic":
        return AnthropicProvider(
            config.model,
            api_key=config.anthropic_api_key,
            max_tokens=config.max_tokens,
            timeout=config.request_timeout_seconds,
            retry_config=retry,
        )
    raise ConfigurationError(f"Unknown LLM provider: {name}", code="UNKNOWN_PROVIDER")


def build_embedder(llm_config: LLMConfig, embedding_config: EmbeddingConfig) -> LLMProvider:
    return build_provider(
        llm_config,
        provider=embedding_config.provider,
        embedding_model=embedding_config.model,
    )
