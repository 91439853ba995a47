from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Audit event types that close a session and trigger replay of its recording.
SESSION_END_TYPES = frozenset({"session.end", "windows.desktop.session.end"})


class Event(BaseModel):
    """A single audit event, immutable once produced.

    `index` is monotonic within the originating stream. `session_id` is only set
    for events read from a session sub-stream or for session-end markers on the
    main stream. `cursor` is the main-stream resumption token after this event.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    time: datetime
    index: int = 0
    session_id: str = ""
    cursor: str = ""
    is_session_end: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("index")
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("index must be >= 0")
        return v

    @field_validator("time")
    def _utc(cls, v):
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def from_raw(
        cls,
        raw: Mapping[str, Any],
        *,
        cursor: str = "",
        index: int = 0,
        session_id: str = "",
    ) -> "Event":
        """Build an Event from a raw audit record (`uid`, `event`, `time`, `ei`, `sid`)."""
        event_type = str(raw.get("event", ""))
        return cls(
            id=str(raw.get("uid") or raw.get("id") or ""),
            type=event_type,
            time=raw.get("time"),
            index=int(raw.get("ei", index)),
            session_id=str(raw.get("sid") or session_id),
            cursor=cursor,
            is_session_end=event_type in SESSION_END_TYPES,
            payload=dict(raw),
        )


@dataclass(frozen=True)
class Session:
    """A session sub-stream to replay, starting at `index` (inclusive)."""

    id: str
    index: int = 0


class Source(ABC):
    """Produces the main audit stream and per-session sub-streams.

    Streams end by exhaustion. Failures are raised as ForwarderError subclasses
    so callers can route them by ErrorKind.
    """

    @abstractmethod
    def main_stream(self, cursor: str, last_id: str) -> AsyncIterator[Event]: ...

    @abstractmethod
    def session_stream(self, session_id: str, start_index: int) -> AsyncIterator[Event]: ...

    async def close(self) -> None:
        return None


class Sink(ABC):
    """Accepts one event for a destination address."""

    @abstractmethod
    async def send(self, url: str, event: Event) -> None: ...

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "Sink":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class StateStore(ABC):
    """Durable progress record.

    Main keys (cursor, last id, start time) and per-session keys are written
    independently. `set_session_index` is an idempotent upsert.
    """

    @abstractmethod
    def get_cursor(self) -> str: ...

    @abstractmethod
    def set_cursor(self, cursor: str) -> None: ...

    @abstractmethod
    def get_last_id(self) -> str: ...

    @abstractmethod
    def set_last_id(self, event_id: str) -> None: ...

    @abstractmethod
    def get_start_time(self) -> Optional[datetime]: ...

    @abstractmethod
    def set_start_time(self, start_time: datetime) -> None:
        """Persist the start time once; raise StartTimeConflictError on change."""

    @abstractmethod
    def get_sessions(self) -> dict[str, int]: ...

    @abstractmethod
    def set_session_index(self, session_id: str, index: int) -> None: ...

    @abstractmethod
    def remove_session(self, session_id: str) -> None: ...
