"""Tests for snapshot persistence."""

import json
import time

import numpy as np
import pytest

from cntx.vector.models import (
    ChunkSubtype,
    CodeChunk,
    Complexity,
    ComplexityLevel,
    FileIndexEntry,
)
from cntx.vector.persistence import SnapshotPersistence
from cntx.vector.store import VectorStore


def code_chunk(name, file_path="src/app.js", start_line=1):
    return CodeChunk(
        id=f"{file_path}:{name}:0",
        name=name,
        file_path=file_path,
        start_line=start_line,
        end_line=start_line + 4,
        source_text=f"export function {name}(input) {{\n  return input;\n}}",
        subtype=ChunkSubtype.FUNCTION,
        language="javascript",
        is_exported=True,
        is_async=False,
        purpose="Utility function",
        domain_tags=frozenset({"file-management"}),
        pattern_tags=frozenset({"public-api"}),
        complexity=Complexity(score=1, level=ComplexityLevel.LOW),
        content_hash=f"hash-{name}",
        includes=('import fs from "fs";',),
    )


@pytest.fixture
def populated_store():
    store = VectorStore(model_name="test-model")
    save = code_chunk("saveFile")
    load = code_chunk("loadFile", start_line=10)
    pending = code_chunk("exportFile", start_line=20)

    with store.batch() as staged:
        staged.upsert(save, np.array([1.0, 0.0, 0.5]))
        staged.upsert(load, np.array([0.2, 1.0, 0.0]))
        staged.upsert(pending)
        staged.set_file(FileIndexEntry(
            file_path="src/app.js",
            content_hash="file-hash",
            chunk_ids=(save.id, load.id, pending.id),
            last_indexed_at=1700000000.0,
        ))
    return store


@pytest.fixture
def persistence(tmp_path, metrics):
    return SnapshotPersistence(tmp_path / "index", persist_interval=5.0, metrics=metrics)


class TestSaveAndLoad:
    """Test writing and restoring snapshots."""

    def test_round_trip_gives_identical_results(self, populated_store, persistence):
        query = np.array([0.6, 0.6, 0.1])
        expected = populated_store.search(query, k=5, min_similarity=0.0)

        persistence.save(populated_store.current)
        loaded = persistence.load("test-model")

        restored = VectorStore(model_name="test-model")
        restored.restore(loaded)

        assert loaded.restored is True
        assert restored.search(query, k=5, min_similarity=0.0) == expected
        assert dict(restored.current.files) == dict(populated_store.current.files)
        assert restored.current.pending_chunk_ids == ["src/app.js:exportFile:0"]

    def test_layout_on_disk(self, populated_store, persistence, metrics):
        persistence.save(populated_store.current)

        names = sorted(p.name for p in persistence.index_path.iterdir())
        payload = json.loads(persistence.snapshot_file.read_text(encoding="utf-8"))
        with np.load(persistence.vectors_file) as archive:
            ids = archive["ids"].tolist()
            matrix = archive["matrix"]
            version = int(archive["version"])

        assert names == ["snapshot.json", "vectors.npz"]
        assert payload["schema_version"] == 2
        assert payload["model_name"] == "test-model"
        assert payload["vector_ids"] == ["src/app.js:loadFile:0", "src/app.js:saveFile:0"]
        assert ids == payload["vector_ids"]
        assert version == payload["version"] == populated_store.current.version
        assert matrix.dtype == np.float32
        assert matrix.shape == (2, 3)
        assert metrics.get_counter("snapshot.persisted") == 1

    def test_missing_snapshot(self, persistence):
        assert persistence.load("test-model") is None

    def test_corrupt_json_is_ignored(self, populated_store, persistence):
        persistence.save(populated_store.current)
        persistence.snapshot_file.write_text("{truncated", encoding="utf-8")

        assert persistence.load("test-model") is None

    def test_schema_mismatch_is_ignored(self, populated_store, persistence):
        persistence.save(populated_store.current)
        payload = json.loads(persistence.snapshot_file.read_text(encoding="utf-8"))
        payload["schema_version"] = 99
        persistence.snapshot_file.write_text(json.dumps(payload), encoding="utf-8")

        assert persistence.load("test-model") is None

    def test_vector_shape_mismatch_is_ignored(self, populated_store, persistence):
        persistence.save(populated_store.current)
        with np.load(persistence.vectors_file) as archive:
            ids, version = archive["ids"], archive["version"]
        with open(persistence.vectors_file, "wb") as handle:
            np.savez(handle, ids=ids, matrix=np.zeros((5, 3), dtype=np.float32), version=version)

        assert persistence.load("test-model") is None

    def test_empty_vectors_file_is_ignored(self, populated_store, persistence):
        persistence.save(populated_store.current)
        persistence.vectors_file.write_bytes(b"")

        assert persistence.load("test-model") is None

    def test_truncated_vectors_file_is_ignored(self, populated_store, persistence):
        persistence.save(populated_store.current)
        data = persistence.vectors_file.read_bytes()
        persistence.vectors_file.write_bytes(data[:len(data) // 2])

        assert persistence.load("test-model") is None

    def test_missing_vectors_file_is_ignored(self, populated_store, persistence):
        persistence.save(populated_store.current)
        persistence.vectors_file.unlink()

        assert persistence.load("test-model") is None

    def test_bare_array_in_place_of_archive_is_ignored(self, populated_store, persistence):
        persistence.save(populated_store.current)
        with open(persistence.vectors_file, "wb") as handle:
            np.save(handle, np.zeros((2, 3), dtype=np.float32))

        assert persistence.load("test-model") is None

    def test_vectors_from_a_newer_save_are_rejected(self, populated_store, persistence):
        persistence.save(populated_store.current)
        old_snapshot_json = persistence.snapshot_file.read_bytes()

        # Same number of embedded rows, different ids and vectors
        with populated_store.batch() as staged:
            staged.remove("src/app.js:loadFile:0")
            staged.upsert(code_chunk("aaaFile", start_line=10), np.array([0.0, 0.0, 9.0]))
        persistence.save(populated_store.current)

        # A crash after the vectors were replaced leaves the previous snapshot.json
        persistence.snapshot_file.write_bytes(old_snapshot_json)

        assert persistence.load("test-model") is None

    def test_unexpected_read_error_does_not_escape(self, populated_store, persistence, monkeypatch):
        persistence.save(populated_store.current)

        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(np, "load", explode)

        assert persistence.load("test-model") is None

    def test_model_mismatch_drops_vectors(self, populated_store, persistence):
        persistence.save(populated_store.current)

        loaded = persistence.load("another-model")

        assert loaded.model_name == "another-model"
        assert len(loaded.chunks) == 3
        assert dict(loaded.records) == {}
        assert len(loaded.pending_chunk_ids) == 3


class TestThrottling:
    """Test when snapshots are written."""

    def test_should_persist_respects_interval(self, populated_store, persistence):
        store = populated_store
        assert persistence.should_persist(store.current) is True

        persistence.save(store.current)
        assert persistence.is_dirty(store.current) is False
        assert persistence.should_persist(store.current) is False

        store.remove("src/app.js:exportFile:0")
        now = time.monotonic()
        assert persistence.is_dirty(store.current) is True
        assert persistence.should_persist(store.current, now=now + 1.0) is False
        assert persistence.should_persist(store.current, now=now + 10.0) is True

    def test_loaded_snapshot_is_clean(self, populated_store, persistence):
        persistence.save(populated_store.current)
        fresh = SnapshotPersistence(persistence.index_path)

        loaded = fresh.load("test-model")

        assert fresh.is_dirty(loaded) is False

    def test_restored_store_is_clean_once_marked(self, populated_store, persistence):
        persistence.save(populated_store.current)
        fresh = SnapshotPersistence(persistence.index_path)
        restored = VectorStore(model_name="test-model")

        restored.restore(fresh.load("test-model"))
        assert fresh.is_dirty(restored.current) is True

        fresh.mark_persisted(restored.current)
        assert fresh.is_dirty(restored.current) is False
