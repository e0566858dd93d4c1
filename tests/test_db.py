import os
from datetime import datetime, timezone

import pytest
import yaml

from auris import config as config_module
from auris import db


@pytest.fixture
def recordings_db(tmp_path, monkeypatch):
    recordings_dir = tmp_path / "recordings"
    recordings_dir.mkdir()
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "paths": {
                    "recordings_dir": str(recordings_dir),
                    "database_path": str(tmp_path / "data" / "auris.db"),
                }
            }
        )
    )
    monkeypatch.setenv("AURIS_CONFIG", str(config_path))
    monkeypatch.delenv("RECORDINGS_DIR", raising=False)
    monkeypatch.delenv("DATABASE_PATH", raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(db, "probe_duration", lambda path: 42.0)
    db.reset_db()
    yield recordings_dir
    db.reset_db()
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)


def test_database_file_created_under_configured_path(recordings_db, tmp_path):
    db.init_db()
    assert (tmp_path / "data" / "auris.db").exists()


def test_insert_and_finalize_recording(recordings_db):
    assert db.insert_recording("2024-05-01_10-00-00.mp3", device="plughw:1,0") is True
    assert db.insert_recording("2024-05-01_10-00-00.mp3") is False

    active = db.active_recording()
    assert active is not None
    assert active.filename == "2024-05-01_10-00-00.mp3"
    assert active.size is None
    assert active.device == "plughw:1,0"

    db.finalize_recording("2024-05-01_10-00-00.mp3", size=2048, duration=12.5)

    assert db.active_recording() is None
    row = db.get_recording("2024-05-01_10-00-00.mp3")
    payload = row.to_dict()
    assert payload["size"] == 2048
    assert payload["duration"] == 12.5
    assert payload["waveformHash"] is None
    assert isinstance(payload["createdAt"], int)


def test_sync_existing_recordings_indexes_files_once(recordings_db):
    old = recordings_db / "old.mp3"
    new = recordings_db / "new.mp3"
    old.write_bytes(b"a" * 10)
    new.write_bytes(b"b" * 20)
    (recordings_db / "notes.txt").write_text("ignored")
    os.utime(old, (1_700_000_000, 1_700_000_000))
    os.utime(new, (1_700_010_000, 1_700_010_000))

    assert db.sync_existing_recordings(recordings_db) == 2
    (recordings_db / "later.mp3").write_bytes(b"c")
    assert db.sync_existing_recordings(recordings_db) == 0

    rows = db.list_recordings()
    assert [row.filename for row in rows] == ["new.mp3", "old.mp3"]
    assert rows[0].size == 20
    assert rows[0].duration == 42.0
    assert rows[1].created_at_ms() == 1_700_000_000_000


def test_waveform_storage(recordings_db):
    db.insert_recording("a.mp3")
    db.insert_recording("b.mp3")

    assert db.store_waveform("missing.mp3", "[0.5]", "deadbeef") is False
    assert db.store_waveform("a.mp3", "[0.0,0.5,1.0]", "cafebabe") is True

    assert db.get_waveform("a.mp3") == "[0.0,0.5,1.0]"
    assert db.get_waveform_peaks("a.mp3") == [0.0, 0.5, 1.0]
    assert db.get_waveform_peaks("b.mp3") is None
    assert db.get_recording("a.mp3").waveform_hash == "cafebabe"
    assert db.filenames_missing_waveform(["a.mp3", "b.mp3", "c.mp3"]) == {"b.mp3", "c.mp3"}


def test_delete_recording(recordings_db):
    db.insert_recording("a.mp3")

    assert db.delete_recording("a.mp3") is True
    assert db.delete_recording("a.mp3") is False
    assert db.get_recording("a.mp3") is None


def test_created_at_ms_treats_naive_values_as_utc():
    row = db.Recording(filename="x.mp3", created_at=datetime(2024, 1, 1, 0, 0, 0))
    aware = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert row.created_at_ms() == int(aware.timestamp() * 1000)
