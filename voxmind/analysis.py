"""
Cheap lexical heuristics applied to every user turn.

These run without any model call and feed the analysis step: what kind of
utterance this is, what it is about, how involved and how urgent it looks.
The weighted confidence roll-up for a request also lives here.
"""

from __future__ import annotations

from typing import Iterable, Literal

from voxmind.types import ReasoningStep

Level = Literal["low", "medium", "high"]

_QUESTION_PREFIXES = ("what", "how", "why")
_REQUEST_MARKERS = ("please", "can you", "help me")

_TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "software_development": ("code", "programming", "development"),
    "project_management": ("project", "task", "work"),
    "team_collaboration": ("team", "people", "meeting"),
}

_HIGH_URGENCY = ("urgent", "asap", "immediately", "critical", "emergency")
_MEDIUM_URGENCY = ("soon", "quickly")

# Relative weight of each step type in the overall confidence.
STEP_WEIGHTS: dict[str, float] = {
    "observation": 0.2,
    "analysis": 0.3,
    "planning": 0.2,
    "execution": 0.2,
    "reflection": 0.1,
    "error": 0.0,
}


def classify_intent(content: str) -> Literal["question", "request", "statement"]:
    lower = content.lower()
    if "?" in lower or lower.startswith(_QUESTION_PREFIXES):
        return "question"
    if any(marker in lower for marker in _REQUEST_MARKERS):
        return "request"
    return "statement"


def extract_topics(content: str) -> list[str]:
    lower = content.lower()
    return [
        topic for topic, keywords in _TOPIC_KEYWORDS.items()
        if any(word in lower for word in keywords)
    ]


def assess_complexity(content: str) -> Level:
    words = len(content.split())
    if words < 10:
        return "low"
    if words < 50:
        return "medium"
    return "high"


def assess_urgency(content: str) -> Level:
    lower = content.lower()
    if any(word in lower for word in _HIGH_URGENCY):
        return "high"
    if any(word in lower for word in _MEDIUM_URGENCY):
        return "medium"
    return "low"


def overall_confidence(steps: Iterable[ReasoningStep]) -> float:
    """Weighted mean of step confidences; error steps carry no weight."""
    weighted = 0.0
    total = 0.0
    for step in steps:
        weight = STEP_WEIGHTS.get(step.type, 0.2)
        weighted += step.confidence * weight
        total += weight
    return weighted / total if total > 0 else 0.0
