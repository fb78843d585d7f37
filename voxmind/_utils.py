"""Shared helpers."""

from __future__ import annotations

import math
import secrets
import string
import time

_ID_ALPHABET = string.ascii_lowercase + string.digits


def clamp01(value: float, default: float = 0.0) -> float:
    """Clamp potentially noisy model-provided scores into [0, 1]."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(numeric):
        return default
    return max(0.0, min(1.0, numeric))


def new_id(prefix: str) -> str:
    """Return an id like ``msg_1718000000000_k3j9x0a1b``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"
