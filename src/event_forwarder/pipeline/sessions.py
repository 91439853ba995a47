"""
Session replay worker pool.

Sessions are queued FIFO and dispatched onto at most `concurrency` replay tasks.
Each task streams one session recording into the sink, persisting the index of
every confirmed (or skipped) event, and removes the session from the state store
once the recording is exhausted.

Failure handling per task:
- connectivity failures and failed progress writes back off (decorrelated
  jitter) and resume from the persisted index, up to `max_retries` times;
  after that the session is left in the state store for a later run and the
  task ends quietly
- cancellation ends the task silently
- anything else is reported through `on_failure`
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Callable, Iterable, Optional

from loguru import logger

from ..metrics.registry import metrics_registry
from .backoff import SESSION_BACKOFF_NUM_TRIES, DecorrelatedBackoff
from .delivery import EventSender, session_url
from .errors import ErrorKind, SessionProgressError, StateStoreError, classify_error, is_retriable
from .queue import BoundedQueue
from .types import Session, Source, StateStore

FailureCallback = Callable[[Session, BaseException], None]


class SessionWorkerPool:
    def __init__(
        self,
        source: Source,
        sender: EventSender,
        state: StateStore,
        *,
        session_sink_url: str,
        stop: asyncio.Event,
        concurrency: int = 5,
        skip_types: Iterable[str] = (),
        queue_size: int | None = None,
        max_retries: int = SESSION_BACKOFF_NUM_TRIES,
        backoff_factory: Optional[Callable[[], DecorrelatedBackoff]] = None,
        on_failure: Optional[FailureCallback] = None,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self._source = source
        self._sender = sender
        self._state = state
        self._session_sink_url = session_sink_url
        self._stop = stop
        self._concurrency = concurrency
        self._skip_types = frozenset(skip_types)
        self._max_retries = max_retries
        self._backoff_factory = backoff_factory or DecorrelatedBackoff
        self._on_failure = on_failure

        self._slots = asyncio.Semaphore(concurrency)
        self._queue: BoundedQueue[Session] = BoundedQueue(
            queue_size or concurrency,
            name="session queue",
            on_size=metrics_registry.session_queue_depth.set,
        )
        self._tasks: set[asyncio.Task] = set()
        self._waiting_slot = False
        self.ready = asyncio.Event()

    # --------------- introspection

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active(self) -> int:
        return len(self._tasks)

    @property
    def queue_size(self) -> int:
        return self._queue.size

    @property
    def queue_capacity(self) -> int:
        return self._queue.capacity

    @property
    def idle(self) -> bool:
        """No session queued, waiting for a slot or being replayed."""
        return self._queue.size == 0 and not self._waiting_slot and not self._tasks

    # --------------- public API

    async def submit(self, session_id: str, start_index: int = 0) -> None:
        """Queue a session for replay; waits while the queue is full."""
        await self._queue.put(Session(id=session_id, index=start_index))
        logger.debug(f"Session queued id={session_id} index={start_index}")

    async def run(self) -> None:
        """Dispatch loop. Runs until cancelled, then cancels in-flight replays."""
        self.ready.set()
        logger.info(f"Session dispatcher started (concurrency={self._concurrency})")
        try:
            while True:
                session = await self._queue.get()
                self._waiting_slot = True
                try:
                    await self._slots.acquire()
                finally:
                    self._waiting_slot = False
                self._start(session)
        finally:
            self._queue.close()
            self.ready.clear()
            tasks = list(self._tasks)
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Session dispatcher stopped")

    # --------------- internals

    def _start(self, session: Session) -> None:
        logger.info(f"Starting session ingest id={session.id} index={session.index}")
        task = asyncio.create_task(self._replay(session), name=f"session-{session.id}")
        self._tasks.add(task)
        metrics_registry.sessions_active.set(len(self._tasks))
        # Done callbacks run even if the task is cancelled before its first step
        task.add_done_callback(partial(self._on_done, session))

    def _on_done(self, session: Session, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slots.release()
        metrics_registry.sessions_active.set(len(self._tasks))

        if task.cancelled():
            return
        exc = task.exception()
        if exc is None or classify_error(exc) is ErrorKind.CANCELED:
            return

        metrics_registry.sessions_finished_total.labels(outcome="failed").inc()
        if self._on_failure:
            self._on_failure(session, exc)

    async def _replay(self, session: Session) -> None:
        log = logger.bind(sid=session.id)
        backoff = self._backoff_factory()
        tries_left = self._max_retries
        index = session.index

        while True:
            try:
                await self._consume(session.id, index)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if classify_error(exc) is ErrorKind.CANCELED:
                    return
                if not is_retriable(exc):
                    log.error(f"Session ingestion failed id={session.id}: {exc}")
                    raise

                if tries_left <= 0:
                    log.error(
                        f"Session ingestion failed id={session.id} after "
                        f"{self._max_retries} retries, will resume on next start: {exc}"
                    )
                    metrics_registry.sessions_finished_total.labels(outcome="abandoned").inc()
                    return

                log.warning(f"Session ingestion error id={session.id}, retrying (n={tries_left}): {exc}")
                metrics_registry.session_retries_total.inc()
                if not await backoff.wait(self._stop):
                    return
                tries_left -= 1

                # Resume from what was confirmed, not from the event that failed
                index = await self._resume_index(session.id, index)
                continue

            metrics_registry.sessions_finished_total.labels(outcome="completed").inc()
            return

    async def _resume_index(self, session_id: str, fallback: int) -> int:
        try:
            sessions = await asyncio.to_thread(self._state.get_sessions)
        except StateStoreError as e:
            logger.warning(f"Could not read progress of session {session_id}, resuming at {fallback}: {e}")
            return fallback
        return sessions.get(session_id, fallback)

    async def _consume(self, session_id: str, start_index: int) -> None:
        url = session_url(self._session_sink_url, session_id)
        log = logger.bind(sid=session_id)
        log.info(f"Started session events ingest id={session_id} index={start_index}")

        async for event in self._source.session_stream(session_id, start_index):
            if event.type in self._skip_types:
                metrics_registry.events_sent_total.labels(stream="session", status="skipped").inc()
                log.debug(f"Skipping session event type={event.type} index={event.index}")
            else:
                await self._sender.send(url, event, stream="session")

            await self._persist(self._state.set_session_index, session_id, event.index)

        log.info(f"Finished session events ingest id={session_id}")
        # Recording exhausted, progress no longer needed
        await self._persist(self._state.remove_session, session_id)

    @staticmethod
    async def _persist(write: Callable[..., None], *args) -> None:
        """Run a progress write off the event loop; failures are retriable for the session."""
        try:
            await asyncio.to_thread(write, *args)
        except SessionProgressError:
            raise
        except StateStoreError as e:
            raise SessionProgressError(str(e)) from e
