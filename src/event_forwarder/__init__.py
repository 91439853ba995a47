"""
Audit Event Forwarder

Exports an append-only audit event stream, plus the per-session recordings it
references, into an HTTP ingestion endpoint with crash-resumable progress.

Usage:
    from event_forwarder.config import ForwarderSettings
    from event_forwarder.pipeline import App

    app = App(ForwarderSettings(sink_url="https://fluentd:8888/events.log"))
    await app.run()
"""

__version__ = "1.0.0"
