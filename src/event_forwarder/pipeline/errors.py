"""
Exceptions for the event forwarding pipeline.

Every failure raised by a Source, Sink or StateStore carries an explicit
ErrorKind so the Poller and session workers decide between reconnect, backoff,
silent stop and fatal shutdown without inspecting messages.
"""

from __future__ import annotations

import asyncio
from enum import Enum


class ErrorKind(str, Enum):
    """Classification used by the pipeline to route failures."""

    CONNECTION = "connection"  # source or sink unreachable - retriable
    STREAM_CLOSED = "stream_closed"  # stream dropped by the peer - reopen
    CANCELED = "canceled"  # shutdown in progress - never fatal
    OTHER = "other"  # anything unclassified - fatal


class ForwarderError(Exception):
    """Base error for the forwarder."""

    kind: ErrorKind = ErrorKind.OTHER


class ConnectionProblem(ForwarderError):
    """Source or sink could not be reached; safe to retry."""

    kind = ErrorKind.CONNECTION


class StreamClosed(ForwarderError):
    """The upstream stream was closed before the end sentinel."""

    kind = ErrorKind.STREAM_CLOSED


class DeliveryError(ForwarderError):
    """Sink rejected an event permanently."""

    pass


class StateStoreError(ForwarderError):
    """Persisted progress could not be read or written."""

    pass


class SessionProgressError(StateStoreError):
    """Session progress could not be persisted; the replay resumes from the last stored index."""

    kind = ErrorKind.CONNECTION


class ConfigConflictError(ForwarderError):
    """Configuration contradicts what was persisted by a previous run."""

    pass


class StartTimeConflictError(ConfigConflictError):
    """An explicit start time differs from the persisted one."""

    pass


class QueueClosedError(ForwarderError):
    """Submission attempted after the session pool stopped accepting work."""

    pass


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto an ErrorKind."""
    if isinstance(exc, ForwarderError):
        return exc.kind
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELED
    if isinstance(exc, EOFError):
        return ErrorKind.STREAM_CLOSED
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.CONNECTION
    return ErrorKind.OTHER


def is_retriable(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.CONNECTION
