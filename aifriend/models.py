"""Row types for personas, conversation turns and memories.

The dataclasses mirror the columns of the ``ai_friends``, ``conversations``
and ``memories`` tables.  ``from_row`` accepts the dictionaries produced by
``psycopg``'s ``dict_row`` factory as well as the plain dictionaries kept by
the in-memory store, so both storage modes share one conversion path.

``PersonaDraft.from_form`` is the parse-and-validate step that turns the raw
text values of the creation form into a typed record before anything is
written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Dict, Mapping, Optional

ROLES = ("user", "assistant")
MIN_AGE = 1
MAX_AGE = 100
DEFAULT_DAILY_MESSAGE_TIME = time(18, 0)
FACT_MAX_LENGTH = 500

REQUIRED_PERSONA_FIELDS = ("name", "age", "occupation", "personality", "tone", "background")
OPTIONAL_PERSONA_FIELDS = ("dream", "family_info", "story")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return datetime.fromtimestamp(0, tz=timezone.utc)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed
    return datetime.fromtimestamp(0, tz=timezone.utc)


def _to_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str) and value.strip():
        return parse_time_of_day(value)
    return DEFAULT_DAILY_MESSAGE_TIME


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def parse_time_of_day(raw: str) -> time:
    """Parse ``HH:MM`` (seconds optional) into a ``time``."""

    text = raw.strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"invalid time of day: {raw!r}")


class Importance:
    """Coarse memory importance tags and their ordinal ranks."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    RANKS = {LOW: 0, MEDIUM: 1, HIGH: 2}

    @classmethod
    def rank(cls, value: str) -> int:
        return cls.RANKS.get(value, -1)

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.RANKS


class PersonaValidationError(ValueError):
    """Raised when persona fields fail validation; ``errors`` maps field to message."""

    def __init__(self, errors: Mapping[str, str]) -> None:
        self.errors: Dict[str, str] = dict(errors)
        summary = "; ".join(f"{name}: {message}" for name, message in self.errors.items())
        super().__init__(summary or "invalid persona")


@dataclass
class PersonaDraft:
    """Validated persona fields ready to be inserted."""

    name: str
    age: int
    occupation: str
    personality: str
    tone: str
    background: str
    dream: Optional[str] = None
    family_info: Optional[str] = None
    story: Optional[str] = None
    daily_message_time: time = DEFAULT_DAILY_MESSAGE_TIME

    def __post_init__(self) -> None:
        errors: Dict[str, str] = {}
        for name in ("name", "occupation", "personality", "tone", "background"):
            if not str(getattr(self, name) or "").strip():
                errors[name] = "required"
        if isinstance(self.age, bool) or not isinstance(self.age, int) or self.age < 1:
            errors["age"] = "must be a positive integer"
        if errors:
            raise PersonaValidationError(errors)
        for name in OPTIONAL_PERSONA_FIELDS:
            setattr(self, name, _optional_text(getattr(self, name)))

    @classmethod
    def from_form(cls, fields: Mapping[str, Any]) -> "PersonaDraft":
        """Convert raw form values (all text) into a draft, collecting every error."""

        errors: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        for name in ("name", "occupation", "personality", "tone", "background"):
            text = str(fields.get(name) or "").strip()
            if not text:
                errors[name] = "required"
            values[name] = text

        raw_age = str(fields.get("age") or "").strip()
        if not raw_age:
            errors["age"] = "required"
        else:
            try:
                age = int(raw_age)
            except ValueError:
                errors["age"] = "must be a whole number"
            else:
                if not MIN_AGE <= age <= MAX_AGE:
                    errors["age"] = f"must be between {MIN_AGE} and {MAX_AGE}"
                values["age"] = age

        raw_time = str(fields.get("daily_message_time") or "").strip()
        if raw_time:
            try:
                values["daily_message_time"] = parse_time_of_day(raw_time)
            except ValueError:
                errors["daily_message_time"] = "expected HH:MM"

        for name in OPTIONAL_PERSONA_FIELDS:
            values[name] = _optional_text(fields.get(name))

        if errors:
            raise PersonaValidationError(errors)
        return cls(**values)

    def to_row(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "age": self.age,
            "occupation": self.occupation,
            "personality": self.personality,
            "tone": self.tone,
            "background": self.background,
            "dream": self.dream,
            "family_info": self.family_info,
            "story": self.story,
            "daily_message_time": self.daily_message_time,
        }


@dataclass
class Persona:
    id: str
    name: str
    age: int
    occupation: str
    personality: str
    tone: str
    background: str
    dream: Optional[str] = None
    family_info: Optional[str] = None
    story: Optional[str] = None
    daily_message_time: time = DEFAULT_DAILY_MESSAGE_TIME
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Persona":
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            age=int(row["age"]),
            occupation=str(row["occupation"]),
            personality=str(row["personality"]),
            tone=str(row["tone"]),
            background=str(row["background"]),
            dream=_optional_text(row.get("dream")),
            family_info=_optional_text(row.get("family_info")),
            story=_optional_text(row.get("story")),
            daily_message_time=_to_time(row.get("daily_message_time")),
            created_at=_to_datetime(row.get("created_at")),
            updated_at=_to_datetime(row.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "occupation": self.occupation,
            "personality": self.personality,
            "tone": self.tone,
            "background": self.background,
            "dream": self.dream,
            "family_info": self.family_info,
            "story": self.story,
            "daily_message_time": self.daily_message_time.strftime("%H:%M"),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class Turn:
    """One immutable conversation entry."""

    id: str
    persona_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Turn":
        return cls(
            id=str(row["id"]),
            persona_id=str(row["ai_friend_id"]),
            role=str(row["role"]),
            content=str(row["content"]),
            created_at=_to_datetime(row.get("created_at")),
        )

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Memory:
    id: str
    persona_id: str
    fact: str
    importance: str
    last_mentioned_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Memory":
        last_mentioned = row.get("last_mentioned_at")
        return cls(
            id=str(row["id"]),
            persona_id=str(row["ai_friend_id"]),
            fact=str(row["fact"]),
            importance=str(row["importance"]),
            last_mentioned_at=_to_datetime(last_mentioned) if last_mentioned else None,
            created_at=_to_datetime(row.get("created_at")),
        )


__all__ = [
    "DEFAULT_DAILY_MESSAGE_TIME",
    "FACT_MAX_LENGTH",
    "Importance",
    "MAX_AGE",
    "MIN_AGE",
    "Memory",
    "OPTIONAL_PERSONA_FIELDS",
    "Persona",
    "PersonaDraft",
    "PersonaValidationError",
    "REQUIRED_PERSONA_FIELDS",
    "ROLES",
    "Turn",
    "parse_time_of_day",
]
