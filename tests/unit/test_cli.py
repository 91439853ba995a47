"""
Unit tests for the forwarder CLI.
"""

import json

import pytest
from typer.testing import CliRunner

from event_forwarder import __version__
from event_forwarder.cli import app
from event_forwarder.state import FileStateStore

runner = CliRunner()


@pytest.fixture
def audit_dir(tmp_path):
    d = tmp_path / "audit"
    (d / "sessions").mkdir(parents=True)
    lines = [
        {"uid": "e1", "event": "user.login", "time": "2024-05-01T12:00:00Z"},
        {"uid": "e2", "event": "session.end", "sid": "s1", "time": "2024-05-01T12:00:05Z"},
    ]
    (d / "events.ndjson").write_text("".join(json.dumps(r) + "\n" for r in lines))
    (d / "sessions" / "s1.ndjson").write_text(
        "".join(
            json.dumps({"uid": f"s1-{i}", "event": "print", "time": "2024-05-01T12:00:01Z"}) + "\n"
            for i in range(3)
        )
    )
    return d


def start_args(audit_dir, storage, *extra):
    return [
        "start",
        "--dry-run",
        "--source-dir",
        str(audit_dir),
        "--storage",
        str(storage),
        "--start-time",
        "2024-05-01T12:00:00",
        *extra,
    ]


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_start_dry_run_then_state(tmp_path, audit_dir):
    """A dry run walks the whole log and leaves only progress behind."""
    storage = tmp_path / "storage"

    result = runner.invoke(app, start_args(audit_dir, storage))
    assert result.exit_code == 0, result.output

    store = FileStateStore(storage, mkdirs=False)
    assert store.get_last_id() == "e2"
    assert store.get_sessions() == {}

    result = runner.invoke(app, ["state", "--storage", str(storage)])
    assert result.exit_code == 0
    dumped = json.loads(result.stdout)
    assert dumped["id"] == "e2"
    assert dumped["start_time"] == "2024-05-01T12:00:00+00:00"
    assert dumped["sessions"] == {}


def test_start_time_conflict_exit_code(tmp_path, audit_dir):
    storage = tmp_path / "storage"
    assert runner.invoke(app, start_args(audit_dir, storage)).exit_code == 0

    args = start_args(audit_dir, storage)
    args[args.index("--start-time") + 1] = "2024-06-01T00:00:00"
    result = runner.invoke(app, args)
    assert result.exit_code == 2


def test_state_missing_storage(tmp_path):
    result = runner.invoke(app, ["state", "--storage", str(tmp_path / "nope")])
    assert result.exit_code == 1
