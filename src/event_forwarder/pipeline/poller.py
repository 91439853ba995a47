from __future__ import annotations

import asyncio
from typing import Callable

from loguru import logger

from ..metrics.registry import metrics_registry
from .delivery import EventSender
from .errors import ErrorKind, classify_error
from .types import Event, Source, StateStore

SessionStarter = Callable[[str], None]


class Poller:
    """Drives the main audit stream into the sink.

    The persisted `(last_id, cursor)` always describes the last event the sink
    confirmed. Session-end events register their session in the state store
    before the main cursor moves past them, then hand the session to
    `start_session`, which must not block (the supervisor queues it in the
    background).
    """

    def __init__(
        self,
        source: Source,
        sender: EventSender,
        state: StateStore,
        *,
        sink_url: str,
        start_session: SessionStarter,
    ):
        self._source = source
        self._sender = sender
        self._state = state
        self._sink_url = sink_url
        self._start_session = start_session
        self.ready = asyncio.Event()

    async def run(self) -> None:
        """Poll until the main stream is exhausted or the task is cancelled.

        Connectivity problems and closed streams reopen from the persisted
        cursor straight away; any other error is raised to the supervisor.
        """
        self.ready.set()
        try:
            while True:
                try:
                    await self._poll()
                except asyncio.CancelledError:
                    logger.debug("Watcher context is cancelled")
                    raise
                except Exception as exc:
                    kind = classify_error(exc)
                    if kind is ErrorKind.CONNECTION:
                        logger.error(f"Failed to connect to audit source: {exc}. Reconnecting...")
                    elif kind is ErrorKind.STREAM_CLOSED:
                        logger.error(f"Watcher stream closed: {exc}. Reconnecting...")
                    elif kind is ErrorKind.CANCELED:
                        logger.debug("Watcher stream cancelled")
                        return
                    else:
                        logger.error(f"Watcher event loop failed: {exc}")
                        raise
                    metrics_registry.main_stream_reconnects_total.labels(reason=kind.value).inc()
                    # Reconnect without delay; let other tasks run first
                    await asyncio.sleep(0)
                    continue

                logger.success("Main audit stream exhausted")
                return
        finally:
            self.ready.clear()

    async def _poll(self) -> None:
        cursor = self._state.get_cursor()
        last_id = self._state.get_last_id()
        logger.info(f"Opening main audit stream cursor={cursor!r} id={last_id!r}")

        async for event in self._source.main_stream(cursor, last_id):
            await self._process(event)

    async def _process(self, event: Event) -> None:
        await self._sender.send(self._sink_url, event, stream="main")

        new_session = event.is_session_end and bool(event.session_id)
        if new_session and event.session_id in self._state.get_sessions():
            # Already tracked (redelivered after a restart); its replay is resumed from state
            new_session = False
        # Progress writes fsync, run them off the event loop
        if new_session:
            await asyncio.to_thread(self._state.set_session_index, event.session_id, 0)

        await asyncio.to_thread(self._state.set_last_id, event.id)
        await asyncio.to_thread(self._state.set_cursor, event.cursor)

        if new_session:
            self._start_session(event.session_id)
