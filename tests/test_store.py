"""
Tests for store persistence and the cross-process lock.
"""

import json

import pytest

from conftest import make_annotation
from onui.errors import LockTimeoutError, StoreError
from onui.schema import upsert_page_snapshot
from onui.store import (
    StoreLock,
    lock_path_for,
    read_store,
    with_store,
    write_json_atomic,
    write_store,
)
from onui.types import STORE_VERSION

PAGE = "https://example.com/a"


class TestReadWrite:

    def test_missing_file_reads_as_empty(self, store_path):
        store = read_store(store_path)
        assert store.version == STORE_VERSION
        assert store.pages == {}
        assert not store_path.exists()

    def test_round_trip(self, store_path):
        store = upsert_page_snapshot(read_store(store_path), PAGE, "A", [make_annotation("a1")])
        write_store(store_path, store)
        assert read_store(store_path) == store

    def test_file_is_pretty_printed_camel_case(self, store_path):
        write_store(store_path, read_store(store_path))
        text = store_path.read_text(encoding="utf-8")
        assert "\n  " in text
        data = json.loads(text)
        assert set(data) == {"version", "updatedAt", "pages", "annotationsById", "changeLog"}

    def test_invalid_json_raises(self, store_path):
        store_path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StoreError, match="not valid JSON"):
            read_store(store_path)

    def test_other_version_reads_as_empty(self, store_path, caplog):
        store_path.write_text(json.dumps({"version": 99, "pages": {"x": {}}}), encoding="utf-8")
        with caplog.at_level("WARNING", logger="onui.store"):
            store = read_store(store_path)
        assert store.pages == {}
        assert "version" in caplog.text

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "nested" / "file.json"
        write_json_atomic(target, {"a": 1})
        write_json_atomic(target, {"a": 2})
        assert json.loads(target.read_text()) == {"a": 2}
        assert [p.name for p in target.parent.iterdir()] == ["file.json"]


class TestStoreLock:

    def test_lock_path_is_sibling(self, store_path):
        assert lock_path_for(store_path) == store_path.with_name("store.v1.json.lock")

    def test_second_holder_times_out(self, store_path):
        with StoreLock(store_path):
            other = StoreLock(store_path, attempts=3, retry_delay=0.001)
            with pytest.raises(LockTimeoutError) as excinfo:
                other.acquire()
        assert excinfo.value.attempts == 3
        assert excinfo.value.lock_path == lock_path_for(store_path)

    def test_released_after_exit(self, store_path):
        with StoreLock(store_path):
            pass
        with StoreLock(store_path, attempts=1):
            pass

    def test_release_is_idempotent(self, store_path):
        lock = StoreLock(store_path)
        lock.acquire()
        lock.release()
        lock.release()


class TestWithStore:

    def test_returns_result_and_persists(self, store_path):
        def add(store):
            return upsert_page_snapshot(store, PAGE, "A", [make_annotation("a1")]), "done"

        assert with_store(store_path, add) == "done"
        assert "a1" in read_store(store_path).annotations_by_id

    def test_failure_writes_nothing_and_releases_lock(self, store_path):
        def boom(store):
            raise RuntimeError("transform failed")

        with pytest.raises(RuntimeError):
            with_store(store_path, boom)
        assert not store_path.exists()

        # Lock was released: a fresh single-attempt acquisition succeeds
        with StoreLock(store_path, attempts=1):
            pass

    def test_times_out_while_locked(self, store_path):
        with StoreLock(store_path):
            with pytest.raises(LockTimeoutError):
                with_store(
                    store_path, lambda s: (s, None),
                    lock_attempts=2, lock_retry_delay=0.001,
                )
