"""Export pipeline

Source -> Poller -> Sink for the main audit stream, and
Source -> SessionWorkerPool -> Sink for session recordings, with:
- Persisted progress (StateStore) written after every confirmed send
- Bounded-concurrency session replay
- Decorrelated-jitter backoff for session connectivity failures
- App supervisor with a single shutdown signal and aggregated errors
"""

from .types import Event, Session, Sink, Source, StateStore, SESSION_END_TYPES
from .errors import (
    ErrorKind,
    ForwarderError,
    ConnectionProblem,
    StreamClosed,
    DeliveryError,
    StateStoreError,
    SessionProgressError,
    ConfigConflictError,
    StartTimeConflictError,
    QueueClosedError,
    classify_error,
    is_retriable,
)
from .backoff import DecorrelatedBackoff
from .queue import BoundedQueue
from .delivery import EventSender, session_url
from .poller import Poller
from .sessions import SessionWorkerPool
from .app import App, AppState, ForwarderHealth

__all__ = [
    # types
    "Event",
    "Session",
    "Sink",
    "Source",
    "StateStore",
    "SESSION_END_TYPES",
    # errors
    "ErrorKind",
    "ForwarderError",
    "ConnectionProblem",
    "StreamClosed",
    "DeliveryError",
    "StateStoreError",
    "SessionProgressError",
    "ConfigConflictError",
    "StartTimeConflictError",
    "QueueClosedError",
    "classify_error",
    "is_retriable",
    # policies
    "DecorrelatedBackoff",
    # runtime
    "BoundedQueue",
    "EventSender",
    "session_url",
    "Poller",
    "SessionWorkerPool",
    "App",
    "AppState",
    "ForwarderHealth",
]
