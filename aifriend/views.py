"""View logic behind the Gradio screens.

The classes here hold no Gradio objects so they can be exercised directly in
tests.  ``aifriend_app`` renders their state and turns ``ViewError`` into a
transient notice.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Mapping, Optional

from .models import Persona, PersonaDraft, PersonaValidationError, Turn
from .store import FriendStore, StoreError

log = logging.getLogger(__name__)

NOTICE_LOAD_FAILED = "Impossible de charger votre ami."
NOTICE_CREATE_FAILED = "Impossible de créer votre ami IA."
NOTICE_SEND_FAILED = "Impossible d'envoyer le message."

Invoker = Callable[[str, str], str]


class ViewError(RuntimeError):
    """A failure to report to the user; the message is the localized notice."""


def created_notice(persona: Persona) -> str:
    return f"{persona.name} est prêt à discuter avec vous."


class ListingView:
    """Personas, newest first, as shown on the landing screen."""

    def __init__(self, store: FriendStore) -> None:
        self._store = store
        self.personas: List[Persona] = []

    def load(self) -> List[Persona]:
        try:
            self.personas = self._store.list_personas()
        except StoreError as exc:
            log.error("Error loading friends: %s", exc)
            self.personas = []
        return self.personas

    def add(self, persona: Persona) -> None:
        """Show a freshly created persona without reloading the list."""

        self.personas = [persona] + [p for p in self.personas if p.id != persona.id]


class CreationView:
    def __init__(self, store: FriendStore) -> None:
        self._store = store

    def submit(self, fields: Mapping[str, str]) -> Persona:
        """Validate the form and insert the persona.

        Raises ``PersonaValidationError`` for invalid input and ``ViewError``
        when the insert fails.
        """

        draft = PersonaDraft.from_form(fields)
        try:
            return self._store.create_persona(draft)
        except StoreError as exc:
            log.error("Error creating AI friend: %s", exc)
            raise ViewError(NOTICE_CREATE_FAILED) from exc


class ChatView:
    """An open conversation with one persona.

    ``activate`` subscribes to inserted turns before loading the history so no
    insert is missed; turns already shown are skipped by id.  ``deactivate``
    releases the subscription.  The view is also a context manager.
    """

    def __init__(self, store: FriendStore, invoke: Invoker) -> None:
        self._store = store
        self._invoke = invoke
        self._subscription = None
        self._seen: set = set()
        self._send_lock = threading.Lock()
        self.persona: Optional[Persona] = None
        self.turns: List[Turn] = []
        self.busy = False

    @property
    def active(self) -> bool:
        return self._subscription is not None

    def activate(self, persona_id: str) -> Persona:
        self.deactivate()
        try:
            self._subscription = self._store.subscribe_turns(persona_id)
            self.persona = self._store.get_persona(persona_id)
        except StoreError as exc:
            log.error("Error loading friend %s: %s", persona_id, exc)
            self.deactivate()
            raise ViewError(NOTICE_LOAD_FAILED) from exc

        self.turns = []
        self._seen = set()
        try:
            history = self._store.list_turns(persona_id)
        except StoreError as exc:
            log.error("Error loading messages: %s", exc)
            history = []
        self._append(history)
        return self.persona

    def deactivate(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def __enter__(self) -> "ChatView":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.deactivate()

    def _append(self, turns: List[Turn]) -> List[Turn]:
        added = []
        for turn in turns:
            if turn.id in self._seen:
                continue
            self._seen.add(turn.id)
            self.turns.append(turn)
            added.append(turn)
        return added

    def poll(self) -> List[Turn]:
        """Move turns delivered by the subscription into ``turns``."""

        if self._subscription is None:
            return []
        return self._append(self._subscription.drain())

    def send(self, message: str) -> bool:
        """Store the user turn, ask the persona for a reply and store it.

        Returns ``False`` without doing anything for blank input or while an
        earlier send is still outstanding.  A failed invocation leaves the user
        turn in place and raises ``ViewError``.
        """

        text = (message or "").strip()
        if not text or self.persona is None:
            return False
        if not self._send_lock.acquire(blocking=False):
            return False
        self.busy = True
        persona_id = self.persona.id
        try:
            try:
                self._store.append_turn(persona_id, "user", text)
                reply = self._invoke(persona_id, text)
                self._store.append_turn(persona_id, "assistant", reply)
            except Exception as exc:
                log.error("Error sending message: %s", exc)
                raise ViewError(NOTICE_SEND_FAILED) from exc
        finally:
            self.busy = False
            self._send_lock.release()
        return True


class ChatSessionRegistry:
    """Chat views keyed by browser session."""

    def __init__(self, factory: Callable[[], ChatView]) -> None:
        self._factory = factory
        self._views: Dict[str, ChatView] = {}
        self._lock = threading.Lock()

    def open(self, session_key: str, persona_id: str) -> ChatView:
        view = self._factory()
        self.close(session_key)
        view.activate(persona_id)
        with self._lock:
            self._views[session_key] = view
        return view

    def get(self, session_key: str) -> Optional[ChatView]:
        with self._lock:
            return self._views.get(session_key)

    def close(self, session_key: str) -> None:
        with self._lock:
            view = self._views.pop(session_key, None)
        if view is not None:
            view.deactivate()

    def close_all(self) -> None:
        with self._lock:
            views = list(self._views.values())
            self._views.clear()
        for view in views:
            view.deactivate()

    def __len__(self) -> int:
        with self._lock:
            return len(self._views)


__all__ = [
    "ChatSessionRegistry",
    "ChatView",
    "CreationView",
    "ListingView",
    "NOTICE_CREATE_FAILED",
    "NOTICE_LOAD_FAILED",
    "NOTICE_SEND_FAILED",
    "PersonaValidationError",
    "ViewError",
    "created_notice",
]
