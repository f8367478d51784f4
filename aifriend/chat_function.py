"""Server-side "chat with friend" handler.

One call performs the whole exchange for a persona: read the persona, the
most recent turns and the top memories, compose the prompt, call the
inference gateway once, and record a memory when the user's message
qualifies.  The caller (the chat view) stores both the user turn and the
assistant reply; this handler never writes turns.

``ChatFunctionClient`` invokes the same handler over HTTP when it is deployed
behind ``aifriend.api``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import requests

from . import config
from .inference import GatewayClient
from .memory_extractor import MemoryCandidate, extract_memory
from .prompt_composer import compose_prompt, context_window
from .store import FriendStore, StoreError

log = logging.getLogger(__name__)

FUNCTION_PATH = "/functions/v1/chat-with-friend"


class ChatFunctionError(RuntimeError):
    """Raised when a remote invocation of the chat function fails."""


def chat_with_friend(
    persona_id: str,
    message: str,
    *,
    store: FriendStore,
    client: GatewayClient,
    extractor: Callable[[str], Optional[MemoryCandidate]] = extract_memory,
    history_limit: Optional[int] = None,
    memory_limit: Optional[int] = None,
) -> str:
    """Return the persona's reply to ``message``."""

    history_limit = config.HISTORY_LIMIT if history_limit is None else history_limit
    memory_limit = config.MEMORY_LIMIT if memory_limit is None else memory_limit

    persona = store.get_persona(persona_id)
    history = context_window(store.recent_turns(persona.id, history_limit), history_limit)
    memories = store.top_memories(persona.id, memory_limit)

    prompt = compose_prompt(persona, history, memories, message, memory_limit=memory_limit)
    reply = client.complete(prompt.messages)["text"]

    candidate = extractor(message)
    if candidate is not None:
        try:
            store.add_memory(persona.id, candidate.fact, candidate.importance)
        except StoreError as exc:
            log.warning("Failed to store memory for persona %s: %s", persona.id, exc)
        else:
            log.info("Stored %s memory for persona %s", candidate.importance, persona.id)

    return reply


class ChatFunctionClient:
    """Invoke a deployed chat function endpoint over HTTP."""

    def __init__(
        self,
        url: str,
        *,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        url = url.rstrip("/")
        if not url.endswith(FUNCTION_PATH):
            url = url + FUNCTION_PATH
        self.url = url
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        self._session = session or requests.Session()

    def close(self) -> None:
        close = getattr(self._session, "close", None)
        if callable(close):
            close()

    def __call__(self, persona_id: str, message: str) -> str:
        body = {"personaId": persona_id, "message": message}
        try:
            response = self._session.post(self.url, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise ChatFunctionError(f"Chat function unreachable: {exc}") from exc

        try:
            data: Dict[str, Any] = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            raise ChatFunctionError(str(data.get("error") or f"HTTP {response.status_code}"))
        reply = data.get("message")
        if not isinstance(reply, str):
            raise ChatFunctionError("Chat function response has no message")
        return reply


__all__ = ["ChatFunctionClient", "ChatFunctionError", "FUNCTION_PATH", "chat_with_friend"]
