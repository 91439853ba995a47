"""
Pytest configuration and fixtures for event-forwarder.

Provides cross-platform event loop configuration, a scriptable Source, a
recording Sink and a StateStore that keeps a write history.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone

import pytest

from event_forwarder.config import ForwarderSettings
from event_forwarder.pipeline import ConnectionProblem, Event, Sink, Source
from event_forwarder.state import FileStateStore

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_event(
    event_id: str,
    *,
    index: int = 0,
    cursor: str | None = None,
    type: str = "user.login",
    session_id: str = "",
    session_end: bool = False,
) -> Event:
    return Event(
        id=event_id,
        type=type,
        time=T0 + timedelta(seconds=index),
        index=index,
        session_id=session_id,
        cursor=cursor if cursor is not None else f"c-{event_id}",
        is_session_end=session_end,
        payload={"uid": event_id, "event": type},
    )


class ScriptedSource(Source):
    """Source replaying scripted main-stream batches and session recordings.

    Each `main_stream` call consumes the next batch; exceptions in a batch are
    raised at that position. With `hold_main`, the main stream blocks once the
    batches run out instead of ending.
    """

    def __init__(self, *, hold_main: bool = False):
        self.main_batches: list[list] = []
        self.sessions: dict[str, list[Event]] = {}
        self.hold_main = hold_main
        self.main_opens: list[tuple[str, str]] = []
        self.session_opens: list[tuple[str, int]] = []
        self._failures: dict[str, list[tuple[int | None, BaseException]]] = {}

    def add_session(self, session_id: str, n: int, *, types: dict[int, str] | None = None) -> None:
        types = types or {}
        self.sessions[session_id] = [
            make_event(
                f"{session_id}-{i}",
                index=i,
                cursor="",
                session_id=session_id,
                type=types.get(i, "session.data"),
            )
            for i in range(n)
        ]

    def fail_session(
        self,
        session_id: str,
        *,
        at_index: int | None = None,
        exc: BaseException | None = None,
        times: int = 1,
    ) -> None:
        """Raise `exc` on the next `times` opens, before `at_index` (or on open if None)."""
        for _ in range(times):
            self._failures.setdefault(session_id, []).append(
                (at_index, exc or ConnectionProblem(f"session {session_id} unavailable"))
            )

    async def main_stream(self, cursor, last_id):
        self.main_opens.append((cursor, last_id))
        batch = self.main_batches.pop(0) if self.main_batches else []
        for item in batch:
            if isinstance(item, BaseException):
                raise item
            yield item
        if self.hold_main and not self.main_batches:
            await asyncio.Event().wait()

    async def session_stream(self, session_id, start_index):
        self.session_opens.append((session_id, start_index))
        pending = self._failures.get(session_id)
        failure = pending.pop(0) if pending else None
        if failure is not None and failure[0] is None:
            raise failure[1]
        for event in self.sessions.get(session_id, []):
            if event.index < start_index:
                continue
            if failure is not None and event.index == failure[0]:
                raise failure[1]
            yield event
            await asyncio.sleep(0)


class RecordingSink(Sink):
    """Sink that records deliveries; can delay, fail specific events or run a hook."""

    def __init__(self, delay: float = 0.0):
        self.sent: list[tuple[str, Event]] = []
        self.delay = delay
        self.failures: dict[str, BaseException] = {}
        self.on_send = None
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def send(self, url, event):
        if self.on_send is not None:
            await self.on_send(url, event)
        if self.delay:
            await asyncio.sleep(self.delay)
        exc = self.failures.pop(event.id, None)
        if exc is not None:
            raise exc
        self.sent.append((url, event))

    def ids(self, url: str | None = None) -> list[str]:
        return [e.id for u, e in self.sent if url is None or u == url]


class RecordingStateStore(FileStateStore):
    """FileStateStore that also keeps an ordered history of writes."""

    def __init__(self, directory):
        super().__init__(directory)
        self.history: list[tuple] = []

    def set_cursor(self, cursor):
        super().set_cursor(cursor)
        self.history.append(("cursor", cursor))

    def set_last_id(self, event_id):
        super().set_last_id(event_id)
        self.history.append(("id", event_id))

    def set_session_index(self, session_id, index):
        super().set_session_index(session_id, index)
        self.history.append(("session", session_id, index))

    def remove_session(self, session_id):
        super().remove_session(session_id)
        self.history.append(("remove", session_id))


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll `predicate` until true or fail the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def source():
    return ScriptedSource()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def state(tmp_path):
    return RecordingStateStore(tmp_path / "storage")


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def until():
    return wait_until


@pytest.fixture
def settings(tmp_path):
    """Settings with fast session backoff for tests."""
    return ForwarderSettings(
        _env_file=None,
        sink_url="http://sink/events.log",
        session_sink_url="http://sink/session",
        storage_dir=tmp_path / "storage",
        source_dir=tmp_path / "audit",
        concurrency=2,
        session_backoff_base=0.001,
        session_backoff_max=0.005,
    )
