"""
Demo script for the audit event forwarder.

Writes a small audit log with two finished sessions into a temp directory and
exports it with a sink that just logs each delivery. Run it twice against the
same storage to see progress resume (nothing is sent the second time).
"""

import asyncio
import json
import tempfile
from pathlib import Path

from loguru import logger

from event_forwarder.config import ForwarderSettings
from event_forwarder.pipeline import App, Event, Sink


class PrintSink(Sink):
    """Sink that logs instead of POSTing."""

    async def send(self, url: str, event: Event) -> None:
        await asyncio.sleep(0.01)  # simulate I/O latency
        logger.info(f"PrintSink -> {url} {event.type} {event.id}")


def write_audit_log(root: Path) -> None:
    sessions = root / "sessions"
    sessions.mkdir(parents=True, exist_ok=True)

    main = []
    for n, sid in enumerate(["sess-a", "sess-b"]):
        main.append({"uid": f"login-{n}", "event": "user.login", "time": f"2024-05-01T12:0{n}:00Z"})
        main.append({"uid": f"end-{n}", "event": "session.end", "sid": sid, "time": f"2024-05-01T12:0{n}:30Z"})
        with open(sessions / f"{sid}.ndjson", "w") as f:
            for i in range(5):
                kind = "print" if i == 2 else "session.data"
                f.write(json.dumps({"uid": f"{sid}-{i}", "event": kind, "ei": i, "time": "2024-05-01T12:00:10Z"}) + "\n")

    with open(root / "events.ndjson", "w") as f:
        for record in main:
            f.write(json.dumps(record) + "\n")


async def main():
    root = Path(tempfile.mkdtemp(prefix="forwarder-demo-"))
    write_audit_log(root / "audit")

    settings = ForwarderSettings(
        _env_file=None,
        source_dir=root / "audit",
        storage_dir=root / "storage",
        start_time="2024-05-01T00:00:00Z",
        concurrency=2,
    )

    logger.info(f"🚀 Exporting demo audit log from {settings.source_dir}")
    app = App(settings, sink=PrintSink())
    await app.run()
    logger.info(f"Final health: {app.health()}")

    logger.info("🔁 Second run: everything is already exported")
    await App(settings, sink=PrintSink()).run()

    logger.info("✅ Forwarder demo complete")


if __name__ == "__main__":
    asyncio.run(main())
