"""
Unit tests for event delivery (EventSender, session URLs).
"""

import pytest
from loguru import logger
from prometheus_client import REGISTRY

from event_forwarder.pipeline import ConnectionProblem, EventSender, session_url


def sent_total(stream: str, status: str) -> float:
    return REGISTRY.get_sample_value(
        "forwarder_events_sent_total", {"stream": stream, "status": status}
    ) or 0.0


@pytest.fixture
def log_records():
    records = []
    handler_id = logger.add(lambda m: records.append(m.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


def test_session_url():
    assert session_url("http://fluentd:8888/session", "abc-123") == "http://fluentd:8888/session.abc-123.log"


@pytest.mark.asyncio
async def test_send_records_success_and_logs(sink, event_factory, log_records):
    """Delivered events are counted and logged with their identifying fields."""
    before = sent_total("main", "success")
    event = event_factory("e1", index=3)

    await EventSender(sink).send("http://sink/events.log", event)

    assert sink.ids() == ["e1"]
    assert sent_total("main", "success") == before + 1
    sent = [r for r in log_records if r["message"].startswith("Event sent")]
    assert len(sent) == 1
    assert sent[0]["extra"]["id"] == "e1"
    assert sent[0]["extra"]["index"] == 3
    assert "sid" not in sent[0]["extra"]


@pytest.mark.asyncio
async def test_send_failure_counted_and_raised(sink, event_factory):
    before = sent_total("session", "failure")
    event = event_factory("s1-0", session_id="s1")
    sink.failures["s1-0"] = ConnectionProblem("down")

    with pytest.raises(ConnectionProblem):
        await EventSender(sink).send("http://sink/session.s1.log", event, stream="session")

    assert sink.sent == []
    assert sent_total("session", "failure") == before + 1


@pytest.mark.asyncio
async def test_dry_run_skips_sink(sink, event_factory, log_records):
    before = sent_total("session", "dry_run")
    sender = EventSender(sink, dry_run=True)
    assert sender.dry_run

    await sender.send("http://sink/session.s1.log", event_factory("s1-0", session_id="s1"), stream="session")

    assert sink.sent == []
    assert sent_total("session", "dry_run") == before + 1
    sent = [r for r in log_records if r["message"].startswith("Event sent")]
    assert sent[0]["extra"]["sid"] == "s1"
