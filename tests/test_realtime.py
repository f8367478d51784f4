from __future__ import annotations

import json
import sys
import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from aifriend.models import Turn
from aifriend.realtime import NOTIFY_CHANNEL, PgTurnListener, TurnBroadcaster, TurnSubscription
from aifriend.store import StoreError


def _turn(turn_id: str, persona_id: str = "p-1", content: str = "hi") -> Turn:
    return Turn(id=turn_id, persona_id=persona_id, role="user", content=content)


def test_subscription_filters_by_persona_and_preserves_order():
    subscription = TurnSubscription("p-1")

    subscription.deliver(_turn("a"))
    subscription.deliver(_turn("x", persona_id="p-2"))
    subscription.deliver(_turn("b"))

    assert [t.id for t in subscription.drain()] == ["a", "b"]
    assert subscription.drain() == []


def test_get_times_out_with_none():
    subscription = TurnSubscription("p-1")

    assert subscription.get(timeout=0.01) is None


def test_closed_subscription_ignores_deliveries():
    subscription = TurnSubscription("p-1")
    subscription.close()
    subscription.close()

    subscription.deliver(_turn("a"))

    assert subscription.closed
    assert subscription.drain() == []


def test_broadcaster_fans_out_and_releases_on_close():
    broadcaster = TurnBroadcaster()
    first = broadcaster.subscribe("p-1")
    second = broadcaster.subscribe("p-1")
    other = broadcaster.subscribe("p-2")

    broadcaster.publish(_turn("a"))

    assert [t.id for t in first.drain()] == ["a"]
    assert [t.id for t in second.drain()] == ["a"]
    assert other.drain() == []
    assert broadcaster.subscriber_count("p-1") == 2

    with first:
        pass

    assert broadcaster.subscriber_count("p-1") == 1
    second.close()
    assert broadcaster.subscriber_count("p-1") == 0


class _Notify:
    def __init__(self, payload: str) -> None:
        self.payload = payload


class _FakeListenConnection:
    def __init__(self) -> None:
        self.executed: List[str] = []
        self.pending: List[_Notify] = []
        self.closed = False
        self.fail_on: Optional[str] = None
        self._lock = threading.Lock()

    def execute(self, query: Any, params: Optional[Dict[str, Any]] = None) -> None:
        if self.fail_on and str(query).startswith(self.fail_on):
            raise RuntimeError(f"{self.fail_on} failed")
        self.executed.append(str(query))

    def push(self, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.pending.append(_Notify(json.dumps(payload)))

    def notifies(self, timeout: Optional[float] = None):
        with self._lock:
            batch, self.pending = self.pending, []
        if not batch:
            time.sleep(min(timeout or 0.01, 0.01))
        for notify in batch:
            yield notify

    def close(self) -> None:
        self.closed = True


class _FakeSQLModule:
    class SQL(str):
        def format(self, identifier: "_FakeSQLModule.Identifier") -> "_FakeSQLModule.SQL":
            return _FakeSQLModule.SQL(str(self).replace("{}", identifier.as_string()))

    class Identifier:
        def __init__(self, name: str) -> None:
            self._name = name

        def as_string(self) -> str:
            return self._name


@pytest.fixture
def listen_connection(monkeypatch):
    connection = _FakeListenConnection()
    calls: List[Dict[str, Any]] = []

    def _connect(dsn: str, autocommit: bool = False):
        calls.append({"dsn": dsn, "autocommit": autocommit})
        return connection

    fake_psycopg = type(
        "psycopg",
        (),
        {"connect": staticmethod(_connect), "sql": _FakeSQLModule, "Error": RuntimeError},
    )
    with monkeypatch.context() as m:
        m.setitem(sys.modules, "psycopg", fake_psycopg)
        m.setitem(sys.modules, "psycopg.sql", _FakeSQLModule)
        connection.connect_calls = calls
        yield connection


def test_pg_listener_fetches_notified_turns_for_its_persona(listen_connection):
    turns = {"t-1": _turn("t-1", content="Bonjour"), "t-2": _turn("t-2", persona_id="p-2")}

    listener = PgTurnListener(
        "p-1",
        dsn="postgresql://example",
        fetch_turn=turns.get,
        schema="friends",
        poll_interval=0.01,
    )
    try:
        listen_connection.push({"id": "t-2", "ai_friend_id": "p-2"})
        listen_connection.push({"id": "t-1", "ai_friend_id": "p-1"})

        delivered = listener.get(timeout=2)
    finally:
        listener.close()

    assert delivered is not None and delivered.content == "Bonjour"
    assert listener.drain() == []
    assert listen_connection.connect_calls == [{"dsn": "postgresql://example", "autocommit": True}]
    assert listen_connection.executed == [
        "SET search_path TO friends, pg_catalog",
        f"LISTEN {NOTIFY_CHANNEL}",
    ]
    assert listen_connection.closed


def test_pg_listener_skips_malformed_payloads(listen_connection, caplog):
    listener = PgTurnListener(
        "p-1",
        dsn="postgresql://example",
        fetch_turn=lambda turn_id: _turn(turn_id),
        poll_interval=0.01,
    )
    try:
        with listen_connection._lock:
            listen_connection.pending.append(_Notify("not json"))
        listen_connection.push({"id": "t-9", "ai_friend_id": "p-1"})

        delivered = listener.get(timeout=2)
    finally:
        listener.close()

    assert delivered is not None and delivered.id == "t-9"
    assert "malformed turn notification" in caplog.text


def test_pg_listener_keeps_listening_after_a_failed_fetch(listen_connection, caplog):
    def _fetch(turn_id: str) -> Turn:
        if turn_id == "t-bad":
            raise StoreError("connection reset")
        return _turn(turn_id, content="Toujours là")

    listener = PgTurnListener(
        "p-1",
        dsn="postgresql://example",
        fetch_turn=_fetch,
        poll_interval=0.01,
        fetch_errors=(StoreError,),
    )
    try:
        listen_connection.push({"id": "t-bad", "ai_friend_id": "p-1"})
        listen_connection.push({"id": "t-ok", "ai_friend_id": "p-1"})

        delivered = listener.get(timeout=2)
    finally:
        listener.close()

    assert delivered is not None and delivered.id == "t-ok"
    assert "Could not fetch turn t-bad" in caplog.text
    assert "stopped" not in caplog.text


def test_pg_listener_ignores_non_object_payloads(listen_connection, caplog):
    listener = PgTurnListener(
        "p-1",
        dsn="postgresql://example",
        fetch_turn=lambda turn_id: _turn(turn_id),
        poll_interval=0.01,
    )
    try:
        with listen_connection._lock:
            listen_connection.pending.append(_Notify("[1, 2]"))
        listen_connection.push({"id": "t-3", "ai_friend_id": "p-1"})

        delivered = listener.get(timeout=2)
    finally:
        listener.close()

    assert delivered is not None and delivered.id == "t-3"
    assert "malformed turn notification" in caplog.text


def test_pg_listener_closes_connection_when_listen_fails(listen_connection):
    listen_connection.fail_on = "LISTEN"

    with pytest.raises(RuntimeError):
        PgTurnListener("p-1", dsn="postgresql://example", fetch_turn=lambda turn_id: None)

    assert listen_connection.closed
