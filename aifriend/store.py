"""Persona, conversation and memory storage.

``FriendStore`` talks to PostgreSQL through a ``psycopg_pool`` connection
pool when a DSN is configured and otherwise keeps rows in process memory so
that the UI and the tests run without a database.  Both modes honour the same
contract:

* personas are listed newest first and fetched by id;
* conversation turns are append-only, read oldest first for display and
  newest first (limited) for prompt context;
* memories are append-only and read by importance, descending, limited.

Inserted turns are pushed to open ``TurnSubscription`` objects, through an
insert trigger plus ``LISTEN/NOTIFY`` in PostgreSQL mode and through an
in-process broadcaster in memory mode.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .models import (
    FACT_MAX_LENGTH,
    Importance,
    Memory,
    Persona,
    PersonaDraft,
    PersonaValidationError,
    ROLES,
    Turn,
)
from .realtime import NOTIFY_CHANNEL, PgTurnListener, TurnBroadcaster, TurnSubscription

_FOREIGN_KEY_VIOLATION = "23503"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS ai_friends (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        age INTEGER NOT NULL CHECK (age > 0),
        occupation TEXT NOT NULL,
        personality TEXT NOT NULL,
        tone TEXT NOT NULL,
        background TEXT NOT NULL,
        dream TEXT NULL,
        family_info TEXT NULL,
        story TEXT NULL,
        daily_message_time TIME NOT NULL DEFAULT '18:00',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id UUID PRIMARY KEY,
        ai_friend_id UUID NOT NULL REFERENCES ai_friends (id),
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS conversations_friend_created_idx
    ON conversations (ai_friend_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS memories (
        id UUID PRIMARY KEY,
        ai_friend_id UUID NOT NULL REFERENCES ai_friends (id),
        fact TEXT NOT NULL,
        importance TEXT NOT NULL,
        last_mentioned_at TIMESTAMPTZ NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS memories_friend_idx ON memories (ai_friend_id)
    """,
    f"""
    CREATE OR REPLACE FUNCTION notify_conversation_insert() RETURNS trigger AS $$
    BEGIN
        PERFORM pg_notify(
            '{NOTIFY_CHANNEL}',
            json_build_object('id', NEW.id, 'ai_friend_id', NEW.ai_friend_id)::text
        );
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    DROP TRIGGER IF EXISTS conversations_notify_insert ON conversations
    """,
    """
    CREATE TRIGGER conversations_notify_insert
    AFTER INSERT ON conversations
    FOR EACH ROW EXECUTE FUNCTION notify_conversation_insert()
    """,
)

_ORDINAL_IMPORTANCE_SQL = (
    "CASE importance WHEN 'high' THEN 2 WHEN 'medium' THEN 1 WHEN 'low' THEN 0 ELSE -1 END"
)


class StoreError(RuntimeError):
    """Raised when the backing store rejects or fails an operation."""


class PersonaNotFoundError(StoreError):
    """Raised when a persona id is unknown or malformed."""


def _parse_uuid(value: Any) -> Optional[str]:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


class FriendStore:
    """Store for personas, turns and memories backed by PostgreSQL or memory."""

    PERSONA_TABLE = "ai_friends"
    TURN_TABLE = "conversations"
    MEMORY_TABLE = "memories"

    def __init__(
        self,
        dsn: Optional[str],
        *,
        schema: Optional[str] = None,
        memory_ordering: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.dsn = dsn
        self.schema = schema
        self.memory_ordering = memory_ordering or config.MEMORY_ORDERING
        if self.memory_ordering not in config.MEMORY_ORDERINGS:
            raise ValueError(f"Unsupported memory ordering: {self.memory_ordering}")
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._personas: Dict[str, Dict[str, Any]] = {}
        self._turns: List[Dict[str, Any]] = []
        self._memories: List[Dict[str, Any]] = []
        self._seq = 0
        self._broadcaster = TurnBroadcaster(logger=self._logger)
        self._pool = None
        self._psycopg = None
        self._sql = None
        self._dict_row = None

        if not dsn:
            self._logger.info("FriendStore running in in-memory mode (dsn not provided)")
            return

        try:
            import psycopg  # type: ignore
            from psycopg import sql as pg_sql  # type: ignore
            from psycopg.rows import dict_row  # type: ignore
            from psycopg_pool import ConnectionPool  # type: ignore
        except ImportError as exc:  # pragma: no cover - depends on environment
            self._logger.error("psycopg is required for PostgreSQL storage: %s", exc)
            return

        try:
            self._pool = ConnectionPool(conninfo=dsn, min_size=1, max_size=5, kwargs={"autocommit": True})
            self._pool.wait()
        except Exception as exc:  # pragma: no cover - connection issues are environment specific
            self._logger.error("Failed to initialise Postgres connection pool: %s", exc)
            self._pool = None
            return

        self._psycopg = psycopg
        self._sql = pg_sql
        self._dict_row = dict_row

        try:
            self._ensure_schema()
        except Exception as exc:  # pragma: no cover - depends on external DB state
            self._logger.error("Failed to ensure Postgres schema: %s", exc)
            self._pool = None
            return
        self._logger.info("FriendStore using Postgres (schema=%s)", schema or "default")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @property
    def uses_postgres(self) -> bool:
        return self._pool is not None

    @property
    def mode(self) -> str:
        return "postgres" if self.uses_postgres else "memory"

    def _with_connection(self):
        if self._pool is None:
            raise RuntimeError("Postgres connection pool is not initialised")
        return self._pool.connection()

    @contextmanager
    def _cursor(self, conn):
        with conn.cursor(row_factory=self._dict_row) as cur:
            yield cur

    def _prepare_connection(self, conn) -> None:
        if not self.schema or self._sql is None:
            return
        if getattr(conn, "_aifriend_schema_set", False):  # pragma: no cover - attribute caching
            return
        conn.execute(
            self._sql.SQL("SET search_path TO {}, pg_catalog").format(
                self._sql.Identifier(self.schema)
            )
        )
        setattr(conn, "_aifriend_schema_set", True)

    def _ensure_schema(self) -> None:
        if self._pool is None:
            return
        with self._with_connection() as conn:
            if self.schema:
                conn.execute(
                    self._sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(
                        self._sql.Identifier(self.schema)
                    )
                )
            self._prepare_connection(conn)
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _run(self, query: str, params: Dict[str, Any], *, fetch: str = "one"):
        try:
            with self._with_connection() as conn:
                self._prepare_connection(conn)
                with self._cursor(conn) as cur:
                    cur.execute(query, params)
                    if fetch == "all":
                        return cur.fetchall() or []
                    return cur.fetchone()
        except self._psycopg.Error as exc:
            if getattr(exc, "sqlstate", None) == _FOREIGN_KEY_VIOLATION:
                raise PersonaNotFoundError("Persona does not exist") from exc
            self._logger.error("Store query failed: %s", exc)
            raise StoreError(str(exc)) from exc

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _require_persona_id(self, persona_id: Any) -> str:
        parsed = _parse_uuid(persona_id)
        if parsed is None:
            raise PersonaNotFoundError(f"Unknown persona: {persona_id!r}")
        return parsed

    def build_memory_query_sql(
        self, *, persona_id: str, limit: int, ordering: Optional[str] = None
    ) -> Tuple[str, Dict[str, Any]]:
        chosen = ordering or self.memory_ordering
        if chosen == "ordinal":
            order_sql = f"{_ORDINAL_IMPORTANCE_SQL} DESC, created_at DESC"
        elif chosen == "lexical":
            order_sql = "importance DESC, created_at DESC"
        else:
            raise ValueError(f"Unsupported memory ordering: {chosen}")
        sql = (
            f"SELECT * FROM {self.MEMORY_TABLE} WHERE ai_friend_id = %(persona_id)s "
            f"ORDER BY {order_sql} LIMIT %(limit)s"
        )
        return sql, {"persona_id": persona_id, "limit": max(limit, 0)}

    def _memory_sort_key(self, row: Dict[str, Any]):
        if self.memory_ordering == "lexical":
            return (row["importance"], row["created_at"], row["_seq"])
        return (Importance.rank(row["importance"]), row["created_at"], row["_seq"])

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------
    def get_persona(self, persona_id: str) -> Persona:
        key = self._require_persona_id(persona_id)
        if self._pool is None:
            with self._lock:
                row = self._personas.get(key)
                if row is None:
                    raise PersonaNotFoundError(f"Unknown persona: {persona_id!r}")
                return Persona.from_row(row)

        row = self._run(f"SELECT * FROM {self.PERSONA_TABLE} WHERE id = %(id)s", {"id": key})
        if not row:
            raise PersonaNotFoundError(f"Unknown persona: {persona_id!r}")
        return Persona.from_row(row)

    def list_personas(self) -> List[Persona]:
        if self._pool is None:
            with self._lock:
                rows = sorted(
                    self._personas.values(),
                    key=lambda r: (r["created_at"], r["_seq"]),
                    reverse=True,
                )
                return [Persona.from_row(row) for row in rows]

        rows = self._run(
            f"SELECT * FROM {self.PERSONA_TABLE} ORDER BY created_at DESC",
            {},
            fetch="all",
        )
        return [Persona.from_row(row) for row in rows]

    def create_persona(self, draft: PersonaDraft) -> Persona:
        payload = draft.to_row()
        payload["id"] = str(uuid.uuid4())
        if self._pool is None:
            now = _utcnow()
            with self._lock:
                row = dict(payload, created_at=now, updated_at=now, _seq=self._next_seq())
                self._personas[payload["id"]] = row
                persona = Persona.from_row(row)
        else:
            row = self._run(
                f"""
                INSERT INTO {self.PERSONA_TABLE} (
                    id, name, age, occupation, personality, tone, background,
                    dream, family_info, story, daily_message_time
                ) VALUES (
                    %(id)s, %(name)s, %(age)s, %(occupation)s, %(personality)s, %(tone)s,
                    %(background)s, %(dream)s, %(family_info)s, %(story)s, %(daily_message_time)s
                )
                RETURNING *
                """,
                payload,
            )
            if not row:
                raise StoreError("Persona insert returned no row")
            persona = Persona.from_row(row)
        self._logger.info("Created persona %s (%s)", persona.id, persona.name)
        return persona

    def update_persona(self, persona_id: str, **changes: Any) -> Persona:
        """Apply field changes to a persona and refresh ``updated_at``."""

        current = self.get_persona(persona_id)
        allowed = set(PersonaDraft.__dataclass_fields__)
        unknown = set(changes) - allowed
        if unknown:
            raise PersonaValidationError({name: "unknown field" for name in sorted(unknown)})
        merged = {name: getattr(current, name) for name in allowed}
        merged.update(changes)
        draft = PersonaDraft(**merged)
        payload = draft.to_row()
        payload["id"] = current.id

        if self._pool is None:
            with self._lock:
                row = self._personas[current.id]
                row.update(payload)
                row["updated_at"] = _utcnow()
                return Persona.from_row(row)

        row = self._run(
            f"""
            UPDATE {self.PERSONA_TABLE} SET
                name = %(name)s, age = %(age)s, occupation = %(occupation)s,
                personality = %(personality)s, tone = %(tone)s, background = %(background)s,
                dream = %(dream)s, family_info = %(family_info)s, story = %(story)s,
                daily_message_time = %(daily_message_time)s, updated_at = now()
            WHERE id = %(id)s
            RETURNING *
            """,
            payload,
        )
        if not row:
            raise PersonaNotFoundError(f"Unknown persona: {persona_id!r}")
        return Persona.from_row(row)

    # ------------------------------------------------------------------
    # Conversation turns
    # ------------------------------------------------------------------
    def list_turns(self, persona_id: str) -> List[Turn]:
        """Every turn of a persona, oldest first."""

        key = self._require_persona_id(persona_id)
        if self._pool is None:
            with self._lock:
                rows = [row for row in self._turns if row["ai_friend_id"] == key]
            rows.sort(key=lambda r: (r["created_at"], r["_seq"]))
            return [Turn.from_row(row) for row in rows]

        rows = self._run(
            f"SELECT * FROM {self.TURN_TABLE} WHERE ai_friend_id = %(persona_id)s "
            "ORDER BY created_at ASC",
            {"persona_id": key},
            fetch="all",
        )
        return [Turn.from_row(row) for row in rows]

    def recent_turns(self, persona_id: str, limit: int) -> List[Turn]:
        """The ``limit`` most recent turns, newest first."""

        key = self._require_persona_id(persona_id)
        if limit <= 0:
            return []
        if self._pool is None:
            with self._lock:
                rows = [row for row in self._turns if row["ai_friend_id"] == key]
            rows.sort(key=lambda r: (r["created_at"], r["_seq"]), reverse=True)
            return [Turn.from_row(row) for row in rows[:limit]]

        rows = self._run(
            f"SELECT * FROM {self.TURN_TABLE} WHERE ai_friend_id = %(persona_id)s "
            "ORDER BY created_at DESC LIMIT %(limit)s",
            {"persona_id": key, "limit": limit},
            fetch="all",
        )
        return [Turn.from_row(row) for row in rows]

    def get_turn(self, turn_id: str) -> Optional[Turn]:
        key = _parse_uuid(turn_id)
        if key is None:
            return None
        if self._pool is None:
            with self._lock:
                for row in self._turns:
                    if row["id"] == key:
                        return Turn.from_row(row)
            return None

        row = self._run(f"SELECT * FROM {self.TURN_TABLE} WHERE id = %(id)s", {"id": key})
        return Turn.from_row(row) if row else None

    def append_turn(self, persona_id: str, role: str, content: str) -> Turn:
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {role!r}")
        if not isinstance(content, str):
            raise TypeError("content must be a string")
        key = self._require_persona_id(persona_id)
        payload = {"id": str(uuid.uuid4()), "ai_friend_id": key, "role": role, "content": content}

        if self._pool is None:
            with self._lock:
                if key not in self._personas:
                    raise PersonaNotFoundError(f"Unknown persona: {persona_id!r}")
                row = dict(payload, created_at=_utcnow(), _seq=self._next_seq())
                self._turns.append(row)
                turn = Turn.from_row(row)
                self._broadcaster.publish(turn)
            return turn

        row = self._run(
            f"""
            INSERT INTO {self.TURN_TABLE} (id, ai_friend_id, role, content)
            VALUES (%(id)s, %(ai_friend_id)s, %(role)s, %(content)s)
            RETURNING *
            """,
            payload,
        )
        if not row:
            raise StoreError("Turn insert returned no row")
        return Turn.from_row(row)

    def subscribe_turns(self, persona_id: str) -> TurnSubscription:
        """Open a subscription delivering turns inserted for ``persona_id`` from now on."""

        key = self._require_persona_id(persona_id)
        if self._pool is None:
            return self._broadcaster.subscribe(key)
        try:
            return PgTurnListener(
                key,
                dsn=self.dsn,
                fetch_turn=self.get_turn,
                schema=self.schema,
                poll_interval=config.POLL_SECONDS,
                fetch_errors=(StoreError,),
                logger=self._logger,
            )
        except self._psycopg.Error as exc:
            self._logger.error("Failed to open turn listener: %s", exc)
            raise StoreError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------
    def top_memories(self, persona_id: str, limit: int) -> List[Memory]:
        key = self._require_persona_id(persona_id)
        if limit <= 0:
            return []
        if self._pool is None:
            with self._lock:
                rows = [row for row in self._memories if row["ai_friend_id"] == key]
            rows.sort(key=self._memory_sort_key, reverse=True)
            return [Memory.from_row(row) for row in rows[:limit]]

        sql, params = self.build_memory_query_sql(persona_id=key, limit=limit)
        rows = self._run(sql, params, fetch="all")
        return [Memory.from_row(row) for row in rows]

    def add_memory(self, persona_id: str, fact: str, importance: str) -> Memory:
        if not Importance.is_valid(importance):
            raise ValueError(f"Unknown importance: {importance!r}")
        key = self._require_persona_id(persona_id)
        payload = {
            "id": str(uuid.uuid4()),
            "ai_friend_id": key,
            "fact": fact[:FACT_MAX_LENGTH],
            "importance": importance,
        }

        if self._pool is None:
            with self._lock:
                if key not in self._personas:
                    raise PersonaNotFoundError(f"Unknown persona: {persona_id!r}")
                row = dict(
                    payload,
                    last_mentioned_at=None,
                    created_at=_utcnow(),
                    _seq=self._next_seq(),
                )
                self._memories.append(row)
                memory = Memory.from_row(row)
        else:
            row = self._run(
                f"""
                INSERT INTO {self.MEMORY_TABLE} (id, ai_friend_id, fact, importance)
                VALUES (%(id)s, %(ai_friend_id)s, %(fact)s, %(importance)s)
                RETURNING *
                """,
                payload,
            )
            if not row:
                raise StoreError("Memory insert returned no row")
            memory = Memory.from_row(row)
        self._logger.debug("Stored %s memory for persona %s", memory.importance, key)
        return memory

    def list_memories(self, persona_id: str) -> List[Memory]:
        """Every memory of a persona, oldest first."""

        key = self._require_persona_id(persona_id)
        if self._pool is None:
            with self._lock:
                rows = [row for row in self._memories if row["ai_friend_id"] == key]
            rows.sort(key=lambda r: (r["created_at"], r["_seq"]))
            return [Memory.from_row(row) for row in rows]

        rows = self._run(
            f"SELECT * FROM {self.MEMORY_TABLE} WHERE ai_friend_id = %(persona_id)s "
            "ORDER BY created_at ASC",
            {"persona_id": key},
            fetch="all",
        )
        return [Memory.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    def health(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {"mode": self.mode}
        if self._pool is None:
            with self._lock:
                report.update(
                    personas=len(self._personas),
                    turns=len(self._turns),
                    memories=len(self._memories),
                )
            return report

        for table, key in (
            (self.PERSONA_TABLE, "personas"),
            (self.TURN_TABLE, "turns"),
            (self.MEMORY_TABLE, "memories"),
        ):
            row = self._run(f"SELECT COUNT(*) AS c FROM {table}", {})
            report[key] = int(row["c"]) if row else 0
        return report


def build_store(*, dsn: Optional[str] = None, schema: Optional[str] = None) -> FriendStore:
    """Create a store from explicit arguments or the environment configuration."""

    return FriendStore(dsn or config.PG_DSN, schema=schema or config.PG_SCHEMA)


__all__ = [
    "FriendStore",
    "PersonaNotFoundError",
    "StoreError",
    "build_store",
]
