"""Tests for watermark persistence (WatermarkStore)."""

from __future__ import annotations

import io
import json
import logging
from datetime import datetime, timedelta, timezone

from mdatp_watch.watch.state import StateStorage, WatermarkStore, file_state_storage

TS = datetime(2024, 3, 10, 12, 30, 15, 123456, tzinfo=timezone.utc)


class _MemoryStorage:
    """In-memory StateStorage: read returns the last written text."""

    def __init__(self, content: str | None = None) -> None:
        self.content = content

    def _open_read(self):
        if self.content is None:
            raise FileNotFoundError("no state")
        return io.StringIO(self.content)

    def _open_write(self):
        storage = self

        class _Writer(io.StringIO):
            def close(self):
                storage.content = self.getvalue()
                super().close()

        return _Writer()

    def storage(self) -> StateStorage:
        return StateStorage(open_read=self._open_read, open_write=self._open_write)


class TestWatermarkStore:
    def test_starts_unset(self):
        store = WatermarkStore()
        assert store.get() is None
        assert store.is_set is False

    def test_set_and_get(self):
        store = WatermarkStore()
        store.set(TS)
        assert store.get() == TS

    def test_naive_datetime_assumed_utc(self):
        store = WatermarkStore()
        store.set(datetime(2024, 1, 1, 0, 0))
        assert store.get() == datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestLoad:
    def test_missing_state_is_not_an_error(self, caplog):
        store = WatermarkStore(TS)
        with caplog.at_level(logging.DEBUG, logger="mdatp-watch"):
            store.load(_MemoryStorage(None).storage())
        assert store.get() is None
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    def test_empty_content_is_not_an_error(self, caplog):
        store = WatermarkStore()
        with caplog.at_level(logging.DEBUG, logger="mdatp-watch"):
            store.load(_MemoryStorage("  \n").storage())
        assert store.get() is None
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    def test_malformed_content_logs_warning(self, caplog):
        store = WatermarkStore(TS)
        with caplog.at_level(logging.DEBUG, logger="mdatp-watch"):
            store.load(_MemoryStorage("{not json").storage())
        assert store.get() is None
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    def test_wrong_type_logs_warning(self, caplog):
        store = WatermarkStore()
        with caplog.at_level(logging.DEBUG, logger="mdatp-watch"):
            store.load(_MemoryStorage('{"lastFetchTime": "yesterday"}').storage())
        assert store.get() is None
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    def test_loads_iso_timestamp(self):
        store = WatermarkStore()
        store.load(_MemoryStorage('{"lastFetchTime": "2024-03-10T12:30:15Z"}').storage())
        assert store.get() == datetime(2024, 3, 10, 12, 30, 15, tzinfo=timezone.utc)

    def test_loads_offset_timestamp_as_utc(self):
        store = WatermarkStore()
        store.load(
            _MemoryStorage('{"lastFetchTime": "2024-03-10T14:30:15+02:00"}').storage()
        )
        assert store.get() == datetime(2024, 3, 10, 12, 30, 15, tzinfo=timezone.utc)
        assert store.get().utcoffset() == timedelta(0)

    def test_go_zero_time_means_unset(self):
        store = WatermarkStore()
        store.load(_MemoryStorage('{"lastFetchTime": "0001-01-01T00:00:00Z"}').storage())
        assert store.get() is None

    def test_null_means_unset(self):
        store = WatermarkStore(TS)
        store.load(_MemoryStorage('{"lastFetchTime": null}').storage())
        assert store.get() is None


class TestSave:
    def test_save_format(self):
        mem = _MemoryStorage()
        store = WatermarkStore(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc))
        assert store.save(mem.storage()) is True
        data = json.loads(mem.content)
        assert list(data) == ["lastFetchTime"]
        assert data["lastFetchTime"].startswith("2024-03-10T12:00:00")

    def test_save_unset_writes_null(self):
        mem = _MemoryStorage()
        WatermarkStore().save(mem.storage())
        assert json.loads(mem.content) == {"lastFetchTime": None}

    def test_roundtrip_in_memory(self):
        mem = _MemoryStorage()
        WatermarkStore(TS).save(mem.storage())
        loaded = WatermarkStore()
        loaded.load(mem.storage())
        assert loaded.get() == TS

    def test_save_failure_is_logged_not_raised(self, caplog):
        def _broken():
            raise PermissionError("read-only")

        storage = StateStorage(open_read=_broken, open_write=_broken)
        with caplog.at_level(logging.ERROR, logger="mdatp-watch"):
            assert WatermarkStore(TS).save(storage) is False
        assert "Could not save state" in caplog.text


class TestFileStateStorage:
    def test_roundtrip_through_file(self, tmp_path):
        storage = file_state_storage(tmp_path / "state.json")
        WatermarkStore(TS).save(storage)

        loaded = WatermarkStore()
        loaded.load(storage)
        assert loaded.get() == TS

    def test_missing_file_reads_as_fresh(self, tmp_path):
        store = WatermarkStore(TS)
        store.load(file_state_storage(tmp_path / "missing.json"))
        assert store.get() is None

    def test_save_truncates_previous_content(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text('{"lastFetchTime": "2020-01-01T00:00:00Z"}' + " " * 200)
        storage = file_state_storage(path)
        WatermarkStore(TS).save(storage)
        assert json.loads(path.read_text())["lastFetchTime"].startswith("2024-03-10")

    def test_save_creates_parent_dirs(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "state.json"
        assert WatermarkStore(TS).save(file_state_storage(path)) is True
        assert path.exists()
