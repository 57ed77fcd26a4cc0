import numpy as np
import pytest

from face_tracking.exceptions import StoreError
from face_tracking.gallery import GalleryCache, parse_descriptor
from face_tracking.types import StoredObject

from conftest import FakeClock, face_record, unit_vector


class FlakyStore:
    def __init__(self, records=None):
        self.records = list(records or [])
        self.fail = False
        self.calls = 0

    def list(self, kind, limit=100, newest_first=True):
        self.calls += 1
        if self.fail:
            raise StoreError("database is locked")
        return list(self.records)


def _stored(name, embedding, object_id="x"):
    return StoredObject(object_id=object_id, kind="face", data=face_record(name, embedding), created_at="")


def test_parse_descriptor_rejects_bad_input():
    assert parse_descriptor([0.1] * 128) is not None
    assert parse_descriptor([0.1] * 127) is None
    assert parse_descriptor("0.1,0.2") is None
    assert parse_descriptor([0.1] * 127 + ["x"]) is None
    assert parse_descriptor([0.1] * 127 + [float("nan")]) is None
    assert parse_descriptor([0.1] * 127 + [True]) is None


def test_snapshot_is_built_from_store(store, gallery):
    store.create("face", face_record("alice", unit_vector(0)))
    store.create("face", face_record("bob", unit_vector(1)))
    snapshot = gallery.current()
    assert snapshot is not None
    # Newest first.
    assert snapshot.names == ["bob", "alice"]
    assert snapshot.embeddings.shape == (2, 128)
    assert not snapshot.embeddings.flags.writeable


def test_records_without_usable_descriptor_are_skipped(store, gallery):
    store.create("face", face_record("alice", unit_vector(0)))
    broken = face_record("mallory", unit_vector(1))
    broken["descriptor"] = broken["descriptor"][:10]
    store.create("face", broken)
    store.create("face", {"descriptor": [0.0] * 128})
    assert gallery.current().names == ["alice"]


def test_rebuilds_at_most_once_per_interval():
    clock = FakeClock()
    source = FlakyStore([_stored("alice", unit_vector(0))])
    cache = GalleryCache(source, refresh_interval=1.0, clock=clock)

    first = cache.current()
    clock.advance(0.5)
    assert cache.current() is first
    assert source.calls == 1

    clock.advance(0.6)
    second = cache.current()
    assert source.calls == 2
    assert second is not first


def test_failed_fetch_keeps_previous_snapshot():
    clock = FakeClock()
    source = FlakyStore([_stored("alice", unit_vector(0))])
    cache = GalleryCache(source, refresh_interval=1.0, clock=clock)
    first = cache.current()

    source.fail = True
    clock.advance(1.5)
    assert cache.current() is first
    assert source.calls == 2


def test_empty_fetch_keeps_previous_snapshot():
    clock = FakeClock()
    source = FlakyStore([_stored("alice", unit_vector(0))])
    cache = GalleryCache(source, refresh_interval=1.0, clock=clock)
    first = cache.current()

    source.records = []
    clock.advance(1.5)
    assert cache.current() is first


def test_empty_store_yields_no_snapshot():
    cache = GalleryCache(FlakyStore([]), clock=FakeClock())
    assert cache.current() is None


def test_invalidate_forces_refetch(store, gallery):
    object_id = store.create("face", face_record("alice", unit_vector(0)))
    assert gallery.current().names == ["alice"]

    store.delete("face", object_id)
    gallery.invalidate()
    assert gallery.current() is None
    assert gallery.fetch_count == 2


def test_snapshot_embeddings_are_float32(store, gallery):
    store.create("face", face_record("alice", unit_vector(0)))
    assert gallery.current().embeddings.dtype == np.float32
    with pytest.raises(ValueError):
        gallery.current().embeddings[0, 0] = 1.0
