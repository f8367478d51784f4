from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

import pytest
import requests

from aifriend.chat_function import FUNCTION_PATH, ChatFunctionClient, ChatFunctionError, chat_with_friend
from aifriend.inference import ConfigurationError, GatewayClient, InferenceError
from aifriend.models import PersonaDraft
from aifriend.store import FriendStore, PersonaNotFoundError, StoreError
from aifriend.views import ChatView, ViewError


class _RecordingGateway:
    def __init__(self, reply: str = "Salut ! Ça me fait plaisir.") -> None:
        self.reply = reply
        self.calls: List[List[Dict[str, str]]] = []

    def complete(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        self.calls.append(messages)
        return {"text": self.reply, "meta": {}}


class _FakeResponse:
    def __init__(self, status_code: int, payload: Any) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FixedSession:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.calls: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs) -> _FakeResponse:
        self.calls.append(dict(kwargs, url=url))
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response

    def close(self) -> None:
        pass


@pytest.fixture
def store() -> FriendStore:
    return FriendStore(None)


@pytest.fixture
def persona(store):
    return store.create_persona(
        PersonaDraft(
            name="Camille",
            age=29,
            occupation="boulangère",
            personality="Curieuse",
            tone="amical",
            background="Lyon",
        )
    )


def test_reply_is_returned_and_short_message_not_remembered(store, persona):
    gateway = _RecordingGateway()

    reply = chat_with_friend(persona.id, "Bonjour", store=store, client=gateway)

    assert reply == "Salut ! Ça me fait plaisir."
    assert store.list_memories(persona.id) == []
    messages = gateway.calls[0]
    assert messages[0]["role"] == "system"
    assert "You are Camille, a 29-year-old boulangère." in messages[0]["content"]
    assert messages[-1] == {"role": "user", "content": "Bonjour"}


def test_handler_never_writes_turns(store, persona):
    chat_with_friend(persona.id, "Bonjour", store=store, client=_RecordingGateway())

    assert store.list_turns(persona.id) == []


def test_qualifying_message_is_remembered_with_importance(store, persona):
    message = "Please remember that my sister is getting married in June next year."

    chat_with_friend(persona.id, message, store=store, client=_RecordingGateway())

    memories = store.list_memories(persona.id)
    assert [(m.fact, m.importance) for m in memories] == [(message, "high")]


def test_context_window_is_last_twenty_turns_oldest_first(store, persona):
    for i in range(25):
        store.append_turn(persona.id, "user" if i % 2 == 0 else "assistant", f"turn {i}")
    gateway = _RecordingGateway()

    chat_with_friend(persona.id, "Et toi ?", store=store, client=gateway, history_limit=20)

    history = gateway.calls[0][1:-1]
    assert [m["content"] for m in history] == [f"turn {i}" for i in range(5, 25)]


def test_top_memories_feed_the_instruction(store, persona):
    store.add_memory(persona.id, "aime le jazz", "low")
    store.add_memory(persona.id, "a peur des chiens", "high")
    store.add_memory(persona.id, "travaille la nuit", "medium")
    gateway = _RecordingGateway()

    chat_with_friend(persona.id, "Coucou", store=store, client=gateway)

    system = gateway.calls[0][0]["content"]
    positions = [system.index(f"- {fact}") for fact in ("travaille la nuit", "aime le jazz", "a peur des chiens")]
    assert positions == sorted(positions)


def test_unknown_persona_fails_before_inference(store):
    gateway = _RecordingGateway()

    with pytest.raises(PersonaNotFoundError):
        chat_with_friend(str(uuid.uuid4()), "Bonjour", store=store, client=gateway)

    assert gateway.calls == []


def test_memory_write_failure_does_not_fail_the_reply(store, persona, monkeypatch, caplog):
    def _broken(*args, **kwargs):
        raise StoreError("disk full")

    monkeypatch.setattr(store, "add_memory", _broken)

    with caplog.at_level(logging.WARNING):
        reply = chat_with_friend(persona.id, "z" * 80, store=store, client=_RecordingGateway("ok"))

    assert reply == "ok"
    assert "Failed to store memory" in caplog.text


def test_missing_credential_is_a_configuration_error(store, persona, monkeypatch):
    monkeypatch.delenv("AIFRIEND_GATEWAY_API_KEY", raising=False)
    session = _FixedSession(AssertionError("no request expected"))
    client = GatewayClient(host="https://gateway.test", session=session)

    with pytest.raises(ConfigurationError):
        chat_with_friend(persona.id, "Bonjour", store=store, client=client)

    assert session.calls == []


def _chat_view(store: FriendStore, gateway) -> ChatView:
    return ChatView(
        store,
        lambda persona_id, message: chat_with_friend(persona_id, message, store=store, client=gateway),
    )


def test_end_to_end_bonjour_appends_user_then_assistant(store, persona):
    with _chat_view(store, _RecordingGateway("Salut Camille est là")) as view:
        view.activate(persona.id)

        assert view.send("Bonjour") is True
        view.poll()

        assert [(t.role, t.content) for t in view.turns] == [
            ("user", "Bonjour"),
            ("assistant", "Salut Camille est là"),
        ]

    assert [(t.role, t.content) for t in store.list_turns(persona.id)] == [
        ("user", "Bonjour"),
        ("assistant", "Salut Camille est là"),
    ]
    assert store.list_memories(persona.id) == []


def test_end_to_end_gateway_failure_keeps_user_turn_only(store, persona):
    session = _FixedSession(_FakeResponse(500, {"error": "upstream"}))
    client = GatewayClient(api_key="k", host="https://gateway.test", session=session)

    with _chat_view(store, client) as view:
        view.activate(persona.id)
        with pytest.raises(ViewError):
            view.send("Bonjour")

    turns = store.list_turns(persona.id)
    assert [(t.role, t.content) for t in turns] == [("user", "Bonjour")]


def test_gateway_failure_propagates_from_handler(store, persona):
    session = _FixedSession(_FakeResponse(502, None))
    client = GatewayClient(api_key="k", host="https://gateway.test", session=session)

    with pytest.raises(InferenceError):
        chat_with_friend(persona.id, "Bonjour", store=store, client=client)


# ----------------------------------------------------------------------
# Remote invocation
# ----------------------------------------------------------------------


def test_function_client_posts_persona_and_message():
    session = _FixedSession(_FakeResponse(200, {"message": "Salut"}))
    client = ChatFunctionClient("https://friends.test/", session=session, timeout=5)

    assert client("p-1", "Bonjour") == "Salut"
    call = session.calls[0]
    assert call["url"] == f"https://friends.test{FUNCTION_PATH}"
    assert call["json"] == {"personaId": "p-1", "message": "Bonjour"}
    assert call["timeout"] == 5


def test_function_client_keeps_full_function_url():
    client = ChatFunctionClient(f"https://friends.test{FUNCTION_PATH}", session=_FixedSession(None))

    assert client.url == f"https://friends.test{FUNCTION_PATH}"


@pytest.mark.parametrize(
    "response, expected",
    [
        (_FakeResponse(500, {"error": "AI gateway error"}), "AI gateway error"),
        (_FakeResponse(404, None), "HTTP 404"),
        (_FakeResponse(200, {"unexpected": True}), "no message"),
        (requests.exceptions.ConnectionError("refused"), "unreachable"),
    ],
)
def test_function_client_failures(response, expected):
    client = ChatFunctionClient("https://friends.test", session=_FixedSession(response))

    with pytest.raises(ChatFunctionError, match=expected):
        client("p-1", "Bonjour")
