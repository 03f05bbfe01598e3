"""Commit events published when a context successfully saves."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from persistor.domain import ids
from persistor.domain.model import JSONValue
from persistor.domain.objects import ChangeSet


class EventType(StrEnum):
    """Event kinds carried on a persistor event bus."""

    CONTEXT_DID_SAVE = "ContextDidSave"


@dataclass(frozen=True, slots=True)
class CommitEvent:
    """Immutable record of one successful save, tagged with the committing context."""

    origin: str
    changes: ChangeSet
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    event_type: EventType = EventType.CONTEXT_DID_SAVE

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        if not isinstance(self.origin, str) or not self.origin.strip():
            raise ValueError("CommitEvent.origin must be a non-empty context token")
        if not isinstance(self.changes, ChangeSet):
            raise ValueError(
                f"CommitEvent.changes must be a ChangeSet, got {type(self.changes).__name__}"
            )
        if self.timestamp.tzinfo is None or self.timestamp.utcoffset() is None:
            raise ValueError("CommitEvent.timestamp must be timezone-aware")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "origin": self.origin,
            "timestamp": self.timestamp.astimezone(UTC)
            .isoformat(timespec="microseconds")
            .replace("+00:00", "Z"),
            "changes": dict(self.changes.summary()),
            "entities": list(self.changes.entity_names),
        }


__all__ = ["CommitEvent", "EventType"]
