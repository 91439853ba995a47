"""
Forwarder supervisor.

Owns the Poller task, the session dispatch loop and every background task
they spawn. A single shutdown signal (`terminate()`) drains all of them; the
terminal error of `run()` aggregates every fatal task failure.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Coroutine, Optional

from loguru import logger

from .. import __version__
from ..config import ForwarderSettings
from .backoff import DecorrelatedBackoff
from .delivery import EventSender
from .errors import ErrorKind, StartTimeConflictError, classify_error
from .poller import Poller
from .sessions import SessionWorkerPool
from .types import Session, Sink, Source, StateStore


class AppState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ForwarderHealth:
    state: AppState
    sessions_active: int
    session_queue_size: int
    session_queue_capacity: int
    errors: int


class App:
    """Runs the export pipeline until the main stream ends or `terminate()` is called.

    Collaborators may be injected; anything left out is built from settings
    (FileStateStore, NdjsonSource, HttpSink).
    """

    IDLE_POLL_INTERVAL = 0.05

    def __init__(
        self,
        settings: ForwarderSettings,
        *,
        source: Optional[Source] = None,
        sink: Optional[Sink] = None,
        state: Optional[StateStore] = None,
    ):
        self.settings = settings
        self._source = source
        self._sink = sink
        self._state = state

        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._submissions: set[asyncio.Task] = set()
        self._errors: list[BaseException] = []
        self._lifecycle = AppState.INITIALIZING

        self.poller: Optional[Poller] = None
        self.pool: Optional[SessionWorkerPool] = None

    # --------------- lifecycle

    @property
    def lifecycle(self) -> AppState:
        return self._lifecycle

    def terminate(self) -> None:
        """Signal shutdown. Safe to call more than once."""
        if not self._stop.is_set():
            logger.info("Shutdown requested")
            self._stop.set()

    async def run(self) -> None:
        """Initialize, run until shutdown, then drain.

        Raises StartTimeConflictError (before anything is ingested) when the
        configured start time contradicts the persisted one, and an
        ExceptionGroup of fatal task errors if any task failed.
        """
        logger.info(f"Audit event forwarder v{__version__}")
        try:
            pending = await self._init()
            self._start(pending)
            self._lifecycle = AppState.RUNNING
            await self._stop.wait()
        finally:
            await self._drain()

        if self._errors:
            raise ExceptionGroup("forwarder stopped with errors", list(self._errors))

    def err(self) -> Optional[BaseException]:
        """Aggregate of terminal task errors, or None."""
        if not self._errors:
            return None
        return ExceptionGroup("forwarder stopped with errors", list(self._errors))

    async def wait_ready(self) -> bool:
        """Wait until both the Poller and the session dispatcher accept work."""
        while self.poller is None or self.pool is None:
            if self._lifecycle is not AppState.INITIALIZING:
                return False
            await asyncio.sleep(0.01)

        ready = asyncio.gather(self.poller.ready.wait(), self.pool.ready.wait())
        stopped = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({ready, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            stopped.cancel()
        return self.poller.ready.is_set() and self.pool.ready.is_set()

    def health(self) -> ForwarderHealth:
        return ForwarderHealth(
            state=self._lifecycle,
            sessions_active=self.pool.active if self.pool else 0,
            session_queue_size=self.pool.queue_size if self.pool else 0,
            session_queue_capacity=self.pool.queue_capacity if self.pool else 0,
            errors=len(self._errors),
        )

    # --------------- background tasks

    def spawn(self, coro: Coroutine, *, name: str) -> asyncio.Task:
        """Start a supervised task; its failure is fatal to the whole app."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None or classify_error(exc) is ErrorKind.CANCELED:
            return
        logger.error(f"Task {task.get_name()} failed: {type(exc).__name__}: {exc}")
        self._errors.append(exc)
        self.terminate()

    def _on_poller_done(self, task: asyncio.Task) -> None:
        # The main stream is required: once the Poller stops, everything stops
        if task.cancelled() or task.exception() is not None:
            self.terminate()
            return
        if self._stop.is_set():
            return
        logger.info("Main stream finished, waiting for session replays")
        self.spawn(self._terminate_when_idle(), name="finish-sessions")

    async def _terminate_when_idle(self) -> None:
        while self._submissions or not self.pool.idle:
            await asyncio.sleep(self.IDLE_POLL_INTERVAL)
        self.terminate()

    def _on_session_failure(self, session: Session, exc: BaseException) -> None:
        logger.error(f"Session {session.id} failed: {type(exc).__name__}: {exc}")
        self._errors.append(exc)
        self.terminate()

    def _start_session(self, session_id: str) -> None:
        self._submit(session_id, 0, name=f"submit-{session_id}")

    def _submit(self, session_id: str, index: int, *, name: str) -> None:
        task = self.spawn(self.pool.submit(session_id, index), name=name)
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)

    # --------------- internals

    async def _init(self) -> dict[str, int]:
        s = self.settings
        s.dump()

        if self._state is None:
            from ..state import FileStateStore

            self._state = FileStateStore(s.storage_dir)

        start_time = self._set_start_time()

        if self._sink is None:
            from ..sinks import HttpSink

            self._sink = HttpSink(
                timeout=s.sink_timeout,
                ca=s.sink_ca,
                cert=s.sink_cert,
                key=s.sink_key,
                retries=s.sink_retries,
                retry_delay=s.sink_retry_delay,
            )
        await self._sink.start()

        if self._source is None:
            from ..sources import NdjsonSource

            self._source = NdjsonSource(
                s.source_dir, start_time=start_time, follow=s.follow, poll_interval=s.poll_interval
            )

        logger.info(f"Using initial cursor value {self._state.get_cursor()!r}")
        logger.info(f"Using initial ID value {self._state.get_last_id()!r}")
        logger.info(f"Using start time from state {start_time.isoformat()}")

        sender = EventSender(self._sink, dry_run=s.dry_run)
        self.pool = SessionWorkerPool(
            self._source,
            sender,
            self._state,
            session_sink_url=s.session_sink_url,
            stop=self._stop,
            concurrency=s.concurrency,
            skip_types=s.skip_session_types,
            queue_size=s.session_queue_size,
            max_retries=s.session_max_retries,
            backoff_factory=partial(
                DecorrelatedBackoff, base=s.session_backoff_base, max_delay=s.session_backoff_max
            ),
            on_failure=self._on_session_failure,
        )
        self.poller = Poller(
            self._source,
            sender,
            self._state,
            sink_url=s.sink_url,
            start_session=self._start_session,
        )

        # Snapshot before the Poller can register new sessions
        return self._state.get_sessions()

    def _set_start_time(self) -> datetime:
        """Persist the start time on first run; refuse a conflicting explicit one."""
        configured = self.settings.start_time
        prev = self._state.get_start_time()

        if prev is None:
            t = configured or datetime.now(timezone.utc).replace(microsecond=0)
            logger.debug(f"Setting start time {t.isoformat()}")
            self._state.set_start_time(t)
            return t

        if configured is not None and configured != prev:
            raise StartTimeConflictError(
                "You can not change start time in the middle of ingestion. "
                f"To restart the ingestion, rm -rf {self.settings.storage_dir}"
            )
        return prev

    def _start(self, pending: dict[str, int]) -> None:
        self.spawn(self.pool.run(), name="session-dispatcher")
        poller_task = self.spawn(self.poller.run(), name="poller")
        poller_task.add_done_callback(self._on_poller_done)

        for session_id, index in pending.items():
            logger.info(f"Restarting session ingestion id={session_id} index={index}")
            self._submit(session_id, index, name=f"resume-{session_id}")

    async def _drain(self) -> None:
        self._lifecycle = AppState.DRAINING
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._sink is not None:
            await self._sink.close()
        if self._source is not None:
            await self._source.close()

        self._lifecycle = AppState.STOPPED
        if self._errors:
            logger.error(f"Forwarder stopped with {len(self._errors)} error(s)")
        else:
            logger.success("Forwarder stopped")
