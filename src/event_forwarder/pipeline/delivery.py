from __future__ import annotations

from time import perf_counter

from loguru import logger

from ..metrics.registry import metrics_registry
from .types import Event, Sink


def session_url(base_url: str, session_id: str) -> str:
    """Destination for a session's events: `<base>.<session_id>.log`."""
    return f"{base_url}.{session_id}.log"


class EventSender:
    """Delivers one event to the sink and records the outcome.

    In dry-run mode nothing reaches the sink but the event is still logged and
    reported as delivered, so progress advances exactly as in a real run.
    """

    def __init__(self, sink: Sink, *, dry_run: bool = False):
        self._sink = sink
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def send(self, url: str, event: Event, *, stream: str = "main") -> None:

        if self._dry_run:
            metrics_registry.events_sent_total.labels(stream=stream, status="dry_run").inc()
        else:
            t0 = perf_counter()
            try:
                await self._sink.send(url, event)
            except Exception:
                metrics_registry.events_sent_total.labels(stream=stream, status="failure").inc()
                raise
            metrics_registry.event_send_latency.labels(stream=stream).observe(perf_counter() - t0)
            metrics_registry.events_sent_total.labels(stream=stream, status="success").inc()

        fields = {"id": event.id, "type": event.type, "ts": event.time.isoformat(), "index": event.index}
        if event.session_id:
            fields["sid"] = event.session_id

        log = logger.bind(**fields)
        log.info(f"Event sent id={event.id} type={event.type} index={event.index}")
        log.debug(f"Event dump: {event.model_dump_json()}")
