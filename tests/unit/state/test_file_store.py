"""
Unit tests for the file-backed progress store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from event_forwarder.pipeline import StartTimeConflictError, StateStoreError
from event_forwarder.state import FileStateStore


@pytest.fixture
def store(tmp_path):
    return FileStateStore(tmp_path / "storage")


def test_empty_store_defaults(store):
    assert store.get_cursor() == ""
    assert store.get_last_id() == ""
    assert store.get_start_time() is None
    assert store.get_sessions() == {}


def test_values_survive_reopen(tmp_path):
    """Progress written by one instance is read back by a fresh one."""
    store = FileStateStore(tmp_path / "storage")
    store.set_cursor("1024")
    store.set_last_id("e-42")
    store.set_session_index("s1", 7)

    reopened = FileStateStore(tmp_path / "storage")
    assert reopened.get_cursor() == "1024"
    assert reopened.get_last_id() == "e-42"
    assert reopened.get_sessions() == {"s1": 7}


def test_start_time_set_once(store):
    t = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    store.set_start_time(t)
    store.set_start_time(t)  # same value is a no-op
    assert store.get_start_time() == t

    with pytest.raises(StartTimeConflictError):
        store.set_start_time(t + timedelta(seconds=1))
    assert store.get_start_time() == t


def test_session_upsert_and_remove(store):
    store.set_session_index("s1", 0)
    store.set_session_index("s1", 3)
    store.set_session_index("s2", 1)
    assert store.get_sessions() == {"s1": 3, "s2": 1}

    store.remove_session("s1")
    store.remove_session("s1")  # missing entry is fine
    assert store.get_sessions() == {"s2": 1}


def test_no_temp_files_left_behind(store):
    store.set_cursor("10")
    store.set_session_index("s1", 2)
    leftovers = [p.name for p in store.directory.rglob("*") if p.name.endswith(".tmp")]
    assert leftovers == []


@pytest.mark.parametrize("sid", ["../escape", ".hidden", "..", "a/b", "win:desktop 1"])
def test_any_session_id_is_stored_inside_sessions_dir(store, sid):
    """Session ids are encoded into file names; they never escape the directory."""
    store.set_session_index(sid, 4)

    files = [p for p in store.directory.rglob("*") if p.is_file()]
    assert len(files) == 1
    assert files[0].parent == store.directory / "sessions"
    assert not files[0].name.startswith(".")
    assert store.get_sessions() == {sid: 4}

    store.remove_session(sid)
    assert store.get_sessions() == {}


def test_empty_session_id_rejected(store):
    with pytest.raises(StateStoreError):
        store.set_session_index("", 0)


def test_corrupt_values_raise(store):
    (store.directory / "sessions" / "s1").write_text("not-a-number")
    with pytest.raises(StateStoreError):
        store.get_sessions()

    (store.directory / "start_time").write_text("yesterday")
    with pytest.raises(StateStoreError):
        store.get_start_time()
