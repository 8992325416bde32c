"""Tests for the result store."""

from pathlib import Path

import pytest

from conftest import FakeClock
from file_converter.conversion import ResultStore
from file_converter.conversion.adapters import LocalStorage
from file_converter.errors import Expired, NotFound


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> ResultStore:
    storage = LocalStorage(tmp_path / "data")
    storage.ensure_dirs()
    return ResultStore(storage, tombstone_ttl_seconds=3600, clock=clock)


def _put(store: ResultStore, job_id: str = "job-1", retention: int = 600):
    return store.put(
        job_id,
        b"%PDF-1.7 body",
        extension="pdf",
        media_type="application/pdf",
        filename="notes.pdf",
        retention_seconds=retention,
    )


def test_put_then_get(store: ResultStore, clock: FakeClock) -> None:
    result = _put(store)
    assert result.path.name == "result.pdf"
    assert result.size_bytes == len(b"%PDF-1.7 body")
    assert (result.expires_at - clock()).total_seconds() == 600
    assert store.get("job-1") == b"%PDF-1.7 body"
    assert result.to_dict()["expiresAt"].endswith("Z")


def test_unknown_result(store: ResultStore) -> None:
    with pytest.raises(NotFound):
        store.locate("nope")


def test_expired_result_is_never_served_even_before_sweep(store: ResultStore, clock: FakeClock) -> None:
    result = _put(store)
    clock.advance(600)
    with pytest.raises(Expired):
        store.get("job-1")
    assert not result.path.exists()
    with pytest.raises(Expired):
        store.locate("job-1")


def test_sweep_deletes_expired_files(store: ResultStore, clock: FakeClock) -> None:
    old = _put(store, "old", retention=60)
    keep = _put(store, "keep", retention=6000)
    clock.advance(61)

    assert store.sweep() == ["old"]
    assert not old.path.exists()
    assert keep.path.exists()
    with pytest.raises(Expired):
        store.locate("old")


def test_tombstones_are_pruned(store: ResultStore, clock: FakeClock) -> None:
    _put(store, retention=60)
    clock.advance(61)
    store.sweep()
    clock.advance(3600)
    store.sweep()
    with pytest.raises(NotFound) as excinfo:
        store.locate("job-1")
    assert not isinstance(excinfo.value, Expired)


def test_delete(store: ResultStore) -> None:
    result = _put(store)
    assert store.delete("job-1") is True
    assert store.delete("job-1") is False
    assert not result.path.exists()
    with pytest.raises(NotFound):
        store.locate("job-1")
