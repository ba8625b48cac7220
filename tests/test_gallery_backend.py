"""Tests for gallery records and the SQLite backend."""

import pytest
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

from facematch.embedding import Embedding
from facematch.errors import StorageError
from facematch.gallery import GalleryRecord, SqliteGalleryBackend

T0 = datetime(2024, 1, 1, 12, 0, 0)


def make_record(identity, values=(1.0, 0.0, 0.0, 0.0), quality=None, remarks=None, at=T0):
    embedding = Embedding(identity, np.array(values, dtype=np.float32), quality, created_at=at)
    return GalleryRecord.from_embedding(embedding, remarks=remarks, now=at)


@pytest.fixture
def backend():
    db = SqliteGalleryBackend(":memory:")
    yield db
    db.close()


class TestGalleryRecord:
    """Test cases for the immutable record model."""

    def test_from_embedding(self):
        """Test a new record is unsaved at version 1."""
        record = make_record("alice", quality=0.8, remarks="front door")
        assert record.id is None
        assert record.version == 1
        assert record.enabled
        assert record.dimension == 4
        assert record.created_at == record.updated_at == T0
        assert record.is_valid()

    def test_to_embedding(self):
        """Test the stored vector decodes back into an embedding."""
        record = make_record("alice", values=(0.5, -0.5, 0.25, 0.0), quality=0.6)
        embedding = record.to_embedding()
        assert embedding.identity == "alice"
        assert embedding.quality == 0.6
        assert np.array_equal(embedding.values, np.array([0.5, -0.5, 0.25, 0.0], dtype=np.float32))

    def test_transforms_bump_version(self):
        """Test each transform increments version and keeps created_at."""
        record = make_record("alice")
        later = T0 + timedelta(minutes=5)

        updated = record.with_remarks("note", later)
        assert updated.version == 2
        assert updated.remarks == "note"
        assert updated.created_at == T0
        assert updated.updated_at == later
        assert record.remarks is None

        assert updated.with_enabled(False, later).version == 3
        assert updated.with_attachment(b"jpg", later).has_attachment

    def test_updated_at_never_precedes_created_at(self):
        """Test a clock running backwards cannot break the timestamp order."""
        record = make_record("alice")
        updated = record.with_remarks("x", T0 - timedelta(hours=1))
        assert updated.updated_at == T0

    def test_with_vector(self):
        """Test re-enrollment replaces vector and quality."""
        record = make_record("alice", quality=0.5)
        new = Embedding("alice", [0.0, 1.0, 0.0, 0.0], quality=0.9)
        updated = record.with_vector(new, T0 + timedelta(seconds=1))
        assert updated.version == 2
        assert updated.quality == 0.9
        assert np.array_equal(updated.vector, new.values)

    def test_storage_size_and_dict(self):
        """Test size estimate and serialization."""
        record = make_record("bob", remarks="hi")
        assert record.storage_size == 16 + 3 + 2 + 64
        data = record.to_dict()
        assert data["identity"] == "bob"
        assert "vector_data" not in data
        assert data["has_attachment"] is False

    def test_immutable(self):
        """Test records cannot be mutated in place."""
        record = make_record("alice")
        with pytest.raises(Exception):
            record.version = 5


class TestSqliteGalleryBackend:
    """Test cases for SqliteGalleryBackend."""

    def test_insert_and_get(self, backend):
        """Test insert assigns an id and the record reads back intact."""
        saved = backend.insert(make_record("alice", quality=0.7, remarks="r"))
        assert saved.id is not None

        loaded = backend.get_by_identity("alice")
        assert loaded == saved
        assert backend.get_by_id(saved.id) == saved
        assert backend.get_by_identity("nobody") is None

    def test_ids_are_not_reused(self, backend):
        """Test AUTOINCREMENT ids keep growing after deletes."""
        first = backend.insert(make_record("a"))
        backend.delete_by_identity("a")
        second = backend.insert(make_record("b"))
        assert second.id > first.id

    def test_identity_is_unique(self, backend):
        """Test a duplicate identity is rejected as a storage error."""
        backend.insert(make_record("alice"))
        with pytest.raises(StorageError):
            backend.insert(make_record("alice"))

    def test_update(self, backend):
        """Test update persists the new version."""
        saved = backend.insert(make_record("alice"))
        changed = saved.with_remarks("updated", T0 + timedelta(seconds=1))
        assert backend.update(changed)
        assert backend.get_by_identity("alice").version == 2

    def test_disabled_records_hidden(self, backend):
        """Test disabled records are excluded from enabled queries."""
        saved = backend.insert(make_record("alice"))
        backend.update(saved.with_enabled(False, T0))

        assert backend.get_by_identity("alice") is None
        assert backend.get_by_identity("alice", include_disabled=True) is not None
        assert backend.count_enabled() == 0
        assert backend.count_total() == 1
        assert backend.list_enabled() == []
        assert len(backend.list_all()) == 1

    def test_ordering(self, backend):
        """Test recent and oldest queries order by created_at then id."""
        backend.insert(make_record("old", at=T0))
        backend.insert(make_record("mid", at=T0 + timedelta(seconds=1)))
        backend.insert(make_record("new", at=T0 + timedelta(seconds=2)))

        assert [r.identity for r in backend.list_enabled()] == ["new", "mid", "old"]
        assert [r.identity for r in backend.recent(2)] == ["new", "mid"]
        assert [r.identity for r in backend.oldest_enabled(1)] == ["old"]

    def test_search(self, backend):
        """Test keyword search over identity and remarks, with LIKE wildcards escaped."""
        backend.insert(make_record("alice", remarks="neighbour"))
        backend.insert(make_record("bob", remarks="mail_carrier"))
        backend.insert(make_record("carol"))

        assert [r.identity for r in backend.search("ali")] == ["alice"]
        assert [r.identity for r in backend.search("neigh")] == ["alice"]
        assert [r.identity for r in backend.search("_")] == ["bob"]
        assert backend.search("%") == []

    def test_by_quality(self, backend):
        """Test quality range queries skip records without quality."""
        backend.insert(make_record("low", quality=0.3))
        backend.insert(make_record("high", quality=0.95))
        backend.insert(make_record("unknown"))
        assert [r.identity for r in backend.by_quality(0.8)] == ["high"]

    def test_time_range_and_cleanup(self, backend):
        """Test time range queries and deletion of old records."""
        backend.insert(make_record("old", at=T0))
        backend.insert(make_record("new", at=T0 + timedelta(days=2)))

        in_range = backend.in_time_range(T0 + timedelta(days=1), T0 + timedelta(days=3))
        assert [r.identity for r in in_range] == ["new"]

        assert backend.delete_created_before(T0 + timedelta(days=1)) == 1
        assert [r.identity for r in backend.list_all()] == ["new"]

    def test_updated_since(self, backend):
        """Test change tracking by version."""
        a = backend.insert(make_record("a"))
        backend.insert(make_record("b"))
        backend.update(a.with_remarks("x", T0))
        assert [r.identity for r in backend.updated_since(1)] == ["a"]

    def test_delete(self, backend):
        """Test delete by identity, ids and all."""
        a = backend.insert(make_record("a"))
        b = backend.insert(make_record("b"))
        backend.insert(make_record("c"))

        assert backend.delete_by_identity("missing") == 0
        assert backend.delete_by_identity("c") == 1
        assert backend.delete_by_ids([a.id, b.id]) == 2
        assert backend.delete_by_ids([]) == 0
        backend.insert(make_record("d"))
        assert backend.delete_all() == 1

    def test_upsert_many(self, backend):
        """Test mixed inserts and updates in one call."""
        existing = backend.insert(make_record("a"))
        saved = backend.upsert_many([
            existing.with_remarks("changed", T0),
            make_record("b"),
        ])
        assert saved[1].id is not None
        assert backend.get_by_identity("a").remarks == "changed"
        assert backend.count_total() == 2

    def test_atomic_rolls_back(self, backend):
        """Test a failure inside atomic() discards every write in the block."""
        backend.insert(make_record("a"))
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.insert(make_record("b"))
                backend.delete_by_identity("a")
                raise RuntimeError("abort")

        assert [r.identity for r in backend.list_all()] == ["a"]

    def test_upsert_many_is_all_or_nothing(self, backend):
        """Test a failing batch leaves no partial writes."""
        backend.insert(make_record("dup"))
        with pytest.raises(StorageError):
            backend.upsert_many([make_record("new"), make_record("dup")])
        assert backend.get_by_identity("new") is None

    def test_stats(self, backend):
        """Test aggregate statistics."""
        backend.insert(make_record("a", quality=0.4, at=T0))
        saved = backend.insert(make_record("b", quality=0.8, at=T0 + timedelta(hours=1)))
        backend.update(saved.with_enabled(False, T0 + timedelta(hours=1)))

        stats = backend.stats()
        assert stats.total_count == 2
        assert stats.enabled_count == 1
        assert stats.average_quality == pytest.approx(0.6)
        assert stats.earliest == T0
        assert stats.latest == T0 + timedelta(hours=1)
        assert stats.dimensions == (4,)
        assert stats.to_dict()["dimensions"] == [4]

    def test_empty_stats(self, backend):
        """Test statistics of an empty gallery."""
        stats = backend.stats()
        assert stats.total_count == 0
        assert stats.average_quality is None
        assert stats.earliest is None

    def test_persists_to_file(self, tmp_path):
        """Test records survive reopening a file database."""
        path = tmp_path / "gallery" / "faces.db"
        db = SqliteGalleryBackend(path)
        db.insert(make_record("alice", values=(0.1, 0.2, 0.3, 0.4)))
        db.close()

        reopened = SqliteGalleryBackend(path)
        record = reopened.get_by_identity("alice")
        reopened.close()
        assert record is not None
        assert np.array_equal(record.vector, np.array([0.1, 0.2, 0.3, 0.4], dtype=np.float32))

    def test_closed_backend(self):
        """Test use after close raises StorageError."""
        db = SqliteGalleryBackend()
        db.close()
        with pytest.raises(StorageError):
            db.count_total()

    def test_file_reads_do_not_wait_for_writer(self, tmp_path):
        """Test a reader thread sees committed rows while another thread holds a write transaction."""
        db = SqliteGalleryBackend(tmp_path / "faces.db")
        db.insert(make_record("a"))

        with ThreadPoolExecutor(max_workers=2) as pool:
            with db.atomic():
                db.insert(make_record("b"))
                readers = [pool.submit(db.list_enabled) for _ in range(2)]
                seen = [future.result(timeout=5) for future in readers]

        assert all([r.identity for r in records] == ["a"] for records in seen)
        assert [r.identity for r in db.list_all()] == ["b", "a"]
        db.close()

    def test_file_backend_uses_wal(self, tmp_path):
        """Test file databases are opened in WAL journal mode."""
        db = SqliteGalleryBackend(tmp_path / "faces.db")
        with db._transaction() as cursor:
            cursor.execute("PRAGMA journal_mode")
            mode = cursor.fetchone()[0]
        db.close()
        assert mode.lower() == "wal"

    def test_closed_file_backend(self, tmp_path):
        """Test every thread's connection is closed with the backend."""
        db = SqliteGalleryBackend(tmp_path / "faces.db")
        with ThreadPoolExecutor(max_workers=1) as pool:
            pool.submit(db.count_total).result(timeout=5)
        db.close()
        with pytest.raises(StorageError):
            db.count_total()
