"""Change subscriptions for newly inserted conversation turns.

A ``TurnSubscription`` is the event source a chat view owns while it is
open: it is acquired when the view activates and released with ``close`` (or
by leaving a ``with`` block) when the view deactivates.  Turns are delivered
in the order the store commits them.

Two producers feed subscriptions:

``TurnBroadcaster``
    In-process fan-out used by the in-memory store.  The store publishes while
    holding its insert lock, so delivery order equals insert order.

``PgTurnListener``
    A dedicated PostgreSQL connection that ``LISTEN``s on the channel the
    ``conversations`` insert trigger notifies.  Notification payloads only
    carry ids; the listener fetches the full row through ``fetch_turn``.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Callable, Dict, List, Optional, Tuple, Type

from .models import Turn

NOTIFY_CHANNEL = "conversation_inserts"


class TurnSubscription:
    """Queue of turns inserted for one persona after the subscription opened."""

    def __init__(
        self,
        persona_id: str,
        *,
        on_close: Optional[Callable[["TurnSubscription"], None]] = None,
    ) -> None:
        self.persona_id = persona_id
        self._queue: "queue.Queue[Turn]" = queue.Queue()
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, turn: Turn) -> None:
        if self._closed or turn.persona_id != self.persona_id:
            return
        self._queue.put(turn)

    def get(self, timeout: Optional[float] = None) -> Optional[Turn]:
        """Block for the next turn; ``None`` when ``timeout`` expires."""

        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Turn]:
        turns: List[Turn] = []
        while True:
            try:
                turns.append(self._queue.get_nowait())
            except queue.Empty:
                return turns

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._on_close is not None:
            self._on_close(self)

    def __enter__(self) -> "TurnSubscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class TurnBroadcaster:
    """Fan inserted turns out to the subscriptions of their persona."""

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._subscribers: Dict[str, List[TurnSubscription]] = {}
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)

    def subscribe(self, persona_id: str) -> TurnSubscription:
        subscription = TurnSubscription(persona_id, on_close=self._remove)
        with self._lock:
            self._subscribers.setdefault(persona_id, []).append(subscription)
        self._logger.debug("Opened turn subscription for persona %s", persona_id)
        return subscription

    def publish(self, turn: Turn) -> None:
        with self._lock:
            targets = list(self._subscribers.get(turn.persona_id, ()))
        for subscription in targets:
            subscription.deliver(turn)

    def subscriber_count(self, persona_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(persona_id, ()))

    def _remove(self, subscription: TurnSubscription) -> None:
        with self._lock:
            current = self._subscribers.get(subscription.persona_id, [])
            remaining = [sub for sub in current if sub is not subscription]
            if remaining:
                self._subscribers[subscription.persona_id] = remaining
            else:
                self._subscribers.pop(subscription.persona_id, None)
        self._logger.debug("Closed turn subscription for persona %s", subscription.persona_id)


class PgTurnListener(TurnSubscription):
    """Subscription backed by PostgreSQL ``LISTEN/NOTIFY``."""

    def __init__(
        self,
        persona_id: str,
        *,
        dsn: str,
        fetch_turn: Callable[[str], Optional[Turn]],
        schema: Optional[str] = None,
        channel: str = NOTIFY_CHANNEL,
        poll_interval: float = 1.0,
        fetch_errors: Tuple[Type[Exception], ...] = (Exception,),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(persona_id)
        import psycopg  # type: ignore
        from psycopg import sql as pg_sql  # type: ignore

        self._psycopg = psycopg
        self._fetch_turn = fetch_turn
        self._fetch_errors = fetch_errors
        self._poll_interval = poll_interval
        self._logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()

        self._conn = psycopg.connect(dsn, autocommit=True)
        try:
            if schema:
                self._conn.execute(
                    pg_sql.SQL("SET search_path TO {}, pg_catalog").format(pg_sql.Identifier(schema))
                )
            self._conn.execute(pg_sql.SQL("LISTEN {}").format(pg_sql.Identifier(channel)))
        except Exception:
            self._conn.close()
            raise
        self._thread = threading.Thread(
            target=self._run,
            name=f"turn-listener-{persona_id}",
            daemon=True,
        )
        self._thread.start()
        self._logger.debug("Listening on %s for persona %s", channel, persona_id)

    def _handle_payload(self, payload: str) -> None:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            self._logger.warning("Ignoring malformed turn notification: %r", payload[:200])
            return
        if str(data.get("ai_friend_id")) != self.persona_id:
            return
        try:
            turn = self._fetch_turn(str(data.get("id")))
        except self._fetch_errors as exc:
            self._logger.warning(
                "Could not fetch turn %s for persona %s: %s", data.get("id"), self.persona_id, exc
            )
            return
        if turn is not None:
            self.deliver(turn)

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                for notify in self._conn.notifies(timeout=self._poll_interval):
                    if self._stop.is_set():
                        break
                    self._handle_payload(notify.payload)
        except self._psycopg.Error as exc:
            if not self._stop.is_set():
                self._logger.error("Turn listener for persona %s stopped: %s", self.persona_id, exc)

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        self._stop.set()
        self._thread.join(timeout=self._poll_interval * 2)
        self._conn.close()


__all__ = ["NOTIFY_CHANNEL", "PgTurnListener", "TurnBroadcaster", "TurnSubscription"]
