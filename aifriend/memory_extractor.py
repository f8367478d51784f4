from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .models import FACT_MAX_LENGTH, Importance

MIN_MESSAGE_LENGTH = 50
MEDIUM_MESSAGE_LENGTH = 100
HIGH_IMPORTANCE_KEYWORDS: Tuple[str, ...] = ("important", "remember")


@dataclass(frozen=True)
class MemoryCandidate:
    fact: str
    importance: str


def classify_importance(message: str) -> str:
    """First matching rule wins: keyword, then length, then low."""

    if any(keyword in message for keyword in HIGH_IMPORTANCE_KEYWORDS):
        return Importance.HIGH
    if len(message) > MEDIUM_MESSAGE_LENGTH:
        return Importance.MEDIUM
    return Importance.LOW


def extract_memory(message: str) -> Optional[MemoryCandidate]:
    """Decide whether the latest user message should be remembered."""

    if len(message) <= MIN_MESSAGE_LENGTH:
        return None
    return MemoryCandidate(fact=message[:FACT_MAX_LENGTH], importance=classify_importance(message))


__all__ = [
    "HIGH_IMPORTANCE_KEYWORDS",
    "MEDIUM_MESSAGE_LENGTH",
    "MIN_MESSAGE_LENGTH",
    "MemoryCandidate",
    "classify_importance",
    "extract_memory",
]
