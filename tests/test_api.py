from __future__ import annotations

import uuid
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from aifriend.api import create_app
from aifriend.chat_function import FUNCTION_PATH
from aifriend.inference import ConfigurationError, InferenceDecodeError, InferenceError
from aifriend.models import PersonaDraft
from aifriend.store import FriendStore, StoreError


class _Gateway:
    def __init__(self, reply: Any = "Salut !") -> None:
        self.reply = reply
        self.calls: List[List[Dict[str, str]]] = []
        self.closed = False

    def complete(self, messages):
        self.calls.append(messages)
        if isinstance(self.reply, BaseException):
            raise self.reply
        return {"text": self.reply, "meta": {}}

    def close(self) -> None:
        self.closed = True


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


def _client(store: FriendStore, gateway: _Gateway) -> TestClient:
    return TestClient(create_app(store, client=gateway))


def test_health_reports_store_mode(store):
    with _client(store, _Gateway()) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store": "memory"}


def test_chat_function_returns_reply(store, persona):
    gateway = _Gateway("Bonjour toi !")

    with _client(store, gateway) as client:
        response = client.post(FUNCTION_PATH, json={"personaId": persona.id, "message": "Bonjour"})

    assert response.status_code == 200
    assert response.json() == {"message": "Bonjour toi !"}
    assert gateway.calls[0][-1] == {"role": "user", "content": "Bonjour"}
    assert gateway.closed


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"personaId": "abc"},
        {"message": "Bonjour"},
        {"personaId": "", "message": "Bonjour"},
        {"personaId": "abc", "message": None},
    ],
)
def test_invalid_body_is_rejected(store, body):
    with _client(store, _Gateway()) as client:
        response = client.post(FUNCTION_PATH, json=body)

    assert response.status_code == 400
    assert response.json() == {"error": "personaId and message are required"}


def test_unknown_persona_is_not_found(store):
    with _client(store, _Gateway()) as client:
        response = client.post(FUNCTION_PATH, json={"personaId": str(uuid.uuid4()), "message": "Bonjour"})

    assert response.status_code == 404
    assert response.json() == {"error": "Persona not found"}


@pytest.mark.parametrize(
    "failure, expected",
    [
        (InferenceError("AI gateway returned HTTP 500"), "AI gateway error"),
        (InferenceDecodeError("Gateway response has no completion content"), "AI gateway error"),
        (ConfigurationError("AIFRIEND_GATEWAY_API_KEY not configured"), "Service misconfigured"),
    ],
)
def test_gateway_failures_are_opaque_errors(store, persona, failure, expected):
    with _client(store, _Gateway(failure)) as client:
        response = client.post(FUNCTION_PATH, json={"personaId": persona.id, "message": "Bonjour"})

    assert response.status_code == 500
    assert response.json() == {"error": expected}


def test_store_failure_is_reported(store, persona, monkeypatch):
    def _broken(*args, **kwargs):
        raise StoreError("connection lost")

    monkeypatch.setattr(store, "top_memories", _broken)

    with _client(store, _Gateway()) as client:
        response = client.post(FUNCTION_PATH, json={"personaId": persona.id, "message": "Bonjour"})

    assert response.status_code == 500
    assert response.json() == {"error": "Storage error"}


def test_unexpected_failure_still_returns_json_error(store, persona, caplog):
    with _client(store, _Gateway(KeyError("choices"))) as client:
        response = client.post(FUNCTION_PATH, json={"personaId": persona.id, "message": "Bonjour"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal error"}
    assert "Unexpected error in chat-with-friend function" in caplog.text


def test_empty_message_is_forwarded(store, persona):
    gateway = _Gateway("Tu es bien silencieux.")

    with _client(store, gateway) as client:
        response = client.post(FUNCTION_PATH, json={"personaId": persona.id, "message": ""})

    assert response.status_code == 200
    assert response.json() == {"message": "Tu es bien silencieux."}
    assert gateway.calls[0][-1] == {"role": "user", "content": ""}


def test_cors_preflight_is_allowed(store):
    with _client(store, _Gateway()) as client:
        response = client.options(
            FUNCTION_PATH,
            headers={
                "Origin": "https://app.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type",
            },
        )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
