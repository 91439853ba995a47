"""
NDJSON audit log source.

Layout of the source directory:

    <dir>/events.ndjson             main audit log, one JSON record per line
    <dir>/sessions/<id>.ndjson      session recording, one event per line

The main-stream cursor is the byte offset just past the last delivered line.
In follow mode the main log is tailed (and waited for if it does not exist
yet); otherwise its end is the end of stream. A missing or truncated main log
is reported after one poll interval.
A missing session recording is a connection problem (it may not be uploaded
yet), so session workers retry it with backoff.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

from loguru import logger

from ..pipeline.errors import ConnectionProblem, ForwarderError, StreamClosed
from ..pipeline.types import Event, Source

MAIN_LOG = "events.ndjson"
SESSIONS_DIR = "sessions"


class NdjsonSource(Source):
    def __init__(
        self,
        directory: Path | str,
        *,
        start_time: Optional[datetime] = None,
        follow: bool = False,
        poll_interval: float = 1.0,
    ):
        self._dir = Path(directory)
        self._start_time = start_time
        self._follow = follow
        self._poll_interval = poll_interval

    async def main_stream(self, cursor: str, last_id: str) -> AsyncIterator[Event]:
        path = self._dir / MAIN_LOG
        try:
            offset = int(cursor) if cursor else 0
        except ValueError as e:
            raise ForwarderError(f"Invalid cursor for {path}: {cursor!r}") from e
        fresh = not cursor

        f = await self._open_main(path)
        with f:
            size = f.seek(0, 2)
            if offset > size:
                await asyncio.sleep(self._poll_interval)
                raise StreamClosed(f"Audit log {path} shorter than cursor {offset} (size {size})")
            f.seek(offset)
            logger.debug(f"Reading {path} from offset {offset} (last id {last_id!r})")

            while True:
                line = f.readline()
                if not line or (self._follow and not line.endswith(b"\n")):
                    if not self._follow:
                        return
                    f.seek(offset)  # partial line, wait for the writer
                    await asyncio.sleep(self._poll_interval)
                    continue

                offset += len(line)
                if not line.strip():
                    continue

                event = Event.from_raw(json.loads(line), cursor=str(offset))
                if fresh and self._start_time is not None and event.time < self._start_time:
                    continue
                yield event

    async def _open_main(self, path: Path):
        """Open the main log.

        In follow mode wait for the file to appear. Otherwise pause one poll
        interval before reporting it missing.
        """
        waiting = False
        while True:
            try:
                return open(path, "rb")
            except FileNotFoundError as e:
                if not self._follow:
                    await asyncio.sleep(self._poll_interval)
                    raise ConnectionProblem(f"Audit log not found: {path}") from e
                if not waiting:
                    logger.info(f"Waiting for audit log {path}")
                    waiting = True
            await asyncio.sleep(self._poll_interval)

    async def session_stream(self, session_id: str, start_index: int) -> AsyncIterator[Event]:
        path = self._dir / SESSIONS_DIR / f"{session_id}.ndjson"
        try:
            f = open(path, "rb")
        except FileNotFoundError as e:
            raise ConnectionProblem(f"Session recording not available: {path}") from e

        with f:
            for lineno, line in enumerate(f):
                if not line.strip():
                    continue
                event = Event.from_raw(json.loads(line), index=lineno, session_id=session_id)
                if event.index < start_index:
                    continue
                yield event
                await asyncio.sleep(0)
