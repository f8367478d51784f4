"""Prompt assembly for persona conversations.

The system instruction is built from ordered sections.  Each section is a
list of ``(label, value)`` pairs; pairs whose value is empty are dropped and a
section left with no pairs disappears entirely, so optional persona fields
never leave a dangling label or blank line behind.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from . import config
from .models import Memory, Persona, Turn

SECTION_SEPARATOR = "\n\n"
NO_MEMORIES_PLACEHOLDER = "No memories yet."

_Pair = Tuple[str, Optional[str]]


@dataclass(frozen=True)
class ComposedPrompt:
    system: str
    messages: List[Dict[str, str]]


def _present(value: Optional[str]) -> bool:
    return value is not None and bool(str(value).strip())


def _render_pairs(pairs: Sequence[_Pair], *, block: bool = False) -> str:
    joiner = ":\n" if block else ": "
    return "\n".join(f"{label}{joiner}{value}" for label, value in pairs if _present(value))


def _memory_block(memories: Sequence[Memory], limit: int) -> str:
    facts = [f"- {memory.fact}" for memory in list(memories)[:limit]]
    body = "\n".join(facts) if facts else NO_MEMORIES_PLACEHOLDER
    return f"SALIENT MEMORIES:\n{body}"


def _directives(persona: Persona, language: str) -> str:
    lines = [
        "Respond naturally and authentically, like a real friend.",
        f"Use a {persona.tone} tone in your replies.",
        "Refer to your memories when they are relevant.",
        f"Share details of your day based on your background ({persona.occupation}).",
        "Ask questions to show your interest.",
        "Stay consistent with your personality and your story.",
        f"Always respond in {language}.",
        "Never mention that you are an AI.",
    ]
    return "INSTRUCTIONS:\n" + "\n".join(f"- {line}" for line in lines)


def compose_system_prompt(
    persona: Persona,
    memories: Sequence[Memory],
    *,
    memory_limit: Optional[int] = None,
    language: Optional[str] = None,
) -> str:
    limit = config.MEMORY_LIMIT if memory_limit is None else memory_limit
    sections = [
        f"You are {persona.name}, a {persona.age}-year-old {persona.occupation}.",
        _render_pairs([("PERSONALITY", persona.personality), ("TONE", persona.tone)]),
        _render_pairs([("BACKGROUND", persona.background)], block=True),
        _render_pairs(
            [
                ("DREAM/AMBITION", persona.dream),
                ("FAMILY", persona.family_info),
                ("STORY", persona.story),
            ]
        ),
        _memory_block(memories, limit),
        _directives(persona, language or config.RESPONSE_LANGUAGE),
    ]
    return SECTION_SEPARATOR.join(section for section in sections if section)


def context_window(turns_newest_first: Sequence[Turn], limit: int) -> List[Turn]:
    """Keep the ``limit`` most recent turns and return them oldest first."""

    if limit <= 0:
        return []
    return list(reversed(list(turns_newest_first)[:limit]))


def build_messages(system: str, history: Sequence[Turn], message: str) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": system}]
    messages.extend(turn.to_message() for turn in history)
    messages.append({"role": "user", "content": message})
    return messages


def compose_prompt(
    persona: Persona,
    history: Sequence[Turn],
    memories: Sequence[Memory],
    message: str,
    *,
    memory_limit: Optional[int] = None,
    language: Optional[str] = None,
) -> ComposedPrompt:
    """Build the system instruction and the message list sent to the gateway.

    ``history`` must already be in chronological order (see ``context_window``).
    """

    system = compose_system_prompt(
        persona, memories, memory_limit=memory_limit, language=language
    )
    return ComposedPrompt(system=system, messages=build_messages(system, history, message))


__all__ = [
    "ComposedPrompt",
    "NO_MEMORIES_PLACEHOLDER",
    "build_messages",
    "compose_prompt",
    "compose_system_prompt",
    "context_window",
]
