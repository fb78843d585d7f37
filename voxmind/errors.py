"""
Error taxonomy for the agent core.

Every failure the runtime records is classified into one of six kinds. Only
initialization surfaces errors to callers as exceptions; everything else is
recovered locally and turned into data (a failed capability result, an empty
enrichment, or a degraded response).
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Optional

import anthropic
import httpx


class AgentErrorKind(str, Enum):
    CONFIGURATION = "configuration_error"
    CAPABILITY = "capability_error"
    MEMORY = "memory_error"
    PROCESSING = "processing_error"
    NETWORK = "network_error"
    VALIDATION = "validation_error"


class AgentError(Exception):
    """Base error carrying a kind, a machine-readable code and free-form details."""

    kind: AgentErrorKind = AgentErrorKind.PROCESSING

    def __init__(
        self,
        message: str,
        *,
        code: str = "UNKNOWN",
        details: Optional[dict[str, Any]] = None,
        kind: Optional[AgentErrorKind] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        if kind is not None:
            self.kind = kind
        self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class ConfigurationError(AgentError):
    kind = AgentErrorKind.CONFIGURATION


class CapabilityError(AgentError):
    kind = AgentErrorKind.CAPABILITY


class MemoryEngineError(AgentError):
    kind = AgentErrorKind.MEMORY


class ProcessingError(AgentError):
    kind = AgentErrorKind.PROCESSING


class ProviderError(AgentError):
    """An LLM or embedding provider could not be reached or returned garbage."""

    kind = AgentErrorKind.NETWORK


class ValidationError(AgentError):
    kind = AgentErrorKind.VALIDATION


def classify_error(error: BaseException) -> AgentErrorKind:
    """Map an arbitrary exception onto the error taxonomy."""
    if isinstance(error, AgentError):
        return error.kind
    if isinstance(error, anthropic.APIError):
        return AgentErrorKind.NETWORK
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.HTTPError)):
        return AgentErrorKind.NETWORK
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return AgentErrorKind.VALIDATION
    return AgentErrorKind.PROCESSING
