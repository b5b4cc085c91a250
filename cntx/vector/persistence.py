"""On-disk persistence of index snapshots."""

import json
import os
import pickle
import tempfile
import time
import zipfile
from pathlib import Path
from types import MappingProxyType
from typing import Optional, Union

import numpy as np

from cntx.observability.logging import get_logger
from cntx.observability.metrics import MetricsCollector, get_metrics_collector
from cntx.vector.exceptions import CorruptSnapshot
from cntx.vector.models import CodeChunk, EmbeddingRecord, FileIndexEntry
from cntx.vector.store import IndexSnapshot

logger = get_logger(__name__)

SCHEMA_VERSION = 2
SNAPSHOT_FILE = "snapshot.json"
VECTORS_FILE = "vectors.npz"

# Errors numpy raises for empty, truncated or otherwise unreadable archives;
# TypeError covers a bare array where an archive was expected
_VECTOR_READ_ERRORS = (
    OSError, ValueError, TypeError, EOFError, KeyError, zipfile.BadZipFile, pickle.UnpicklingError,
)


class SnapshotPersistence:
    """Read and write snapshots under one index directory.

    Layout: ``snapshot.json`` holds files, chunks and the id list of the
    embedded rows; ``vectors.npz`` holds the same ids, the float32 matrix
    and the snapshot version. Both files are written to temporary files and
    moved into place, vectors first. A crash between the two moves leaves
    archives whose version or ids disagree, which loads as corrupt.
    """

    def __init__(
        self,
        index_path: Union[str, Path],
        persist_interval: float = 5.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.index_path = Path(index_path)
        self.persist_interval = persist_interval
        self.metrics = metrics or get_metrics_collector()
        self._last_persisted_at: Optional[float] = None
        self._last_persisted_version: Optional[int] = None

    @property
    def snapshot_file(self) -> Path:
        return self.index_path / SNAPSHOT_FILE

    @property
    def vectors_file(self) -> Path:
        return self.index_path / VECTORS_FILE

    def is_dirty(self, snapshot: IndexSnapshot) -> bool:
        return snapshot.version != self._last_persisted_version

    def should_persist(self, snapshot: IndexSnapshot, now: Optional[float] = None) -> bool:
        """True when ``snapshot`` is unsaved and the throttle interval has passed."""
        if not self.is_dirty(snapshot):
            return False
        if self._last_persisted_at is None:
            return True
        now = time.monotonic() if now is None else now
        return now - self._last_persisted_at >= self.persist_interval

    def save(self, snapshot: IndexSnapshot) -> None:
        """Write ``snapshot`` to disk atomically."""
        self.index_path.mkdir(parents=True, exist_ok=True)

        ids, matrix = snapshot.embedding_matrix()
        payload = {
            "schema_version": SCHEMA_VERSION,
            "model_name": snapshot.model_name,
            "version": snapshot.version,
            "saved_at": time.time(),
            "files": [entry.to_dict() for entry in snapshot.files.values()],
            "chunks": [chunk.to_dict() for chunk in snapshot.chunks.values()],
            "vector_ids": list(ids),
        }

        self._write_atomic(self.vectors_file, lambda handle: np.savez(
            handle,
            ids=np.array(ids, dtype=np.str_),
            matrix=np.asarray(matrix, dtype=np.float32),
            version=np.array(snapshot.version, dtype=np.int64),
        ))
        self._write_atomic(
            self.snapshot_file,
            lambda handle: handle.write(json.dumps(payload).encode("utf-8")),
        )

        self._last_persisted_at = time.monotonic()
        self._last_persisted_version = snapshot.version
        self.metrics.increment_counter("snapshot.persisted")
        logger.info(
            "Snapshot persisted",
            path=str(self.index_path),
            version=snapshot.version,
            chunks=len(snapshot.chunks),
            embeddings=len(ids),
        )

    def _write_atomic(self, target: Path, write) -> None:
        fd, temp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                write(handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def load(self, model_name: Optional[str] = None) -> Optional[IndexSnapshot]:
        """Load the persisted snapshot.

        Args:
            model_name: Name of the active embedder; vectors written by another
                model are dropped and their chunks come back pending

        Returns:
            The restored snapshot, or None when nothing usable is on disk
        """
        if not self.snapshot_file.exists():
            logger.info("No persisted snapshot found", path=str(self.index_path))
            return None

        try:
            snapshot = self._read(model_name)
        except CorruptSnapshot as e:
            logger.warning("Ignoring corrupt snapshot, index will be rebuilt", path=str(self.index_path), error=str(e))
            return None
        except Exception as e:
            # A bad snapshot must never stop startup
            logger.error(
                "Unexpected error reading snapshot, index will be rebuilt",
                path=str(self.index_path),
                error=f"{type(e).__name__}: {e}",
                exc_info=True,
            )
            return None

        self.mark_persisted(snapshot)
        return snapshot

    def mark_persisted(self, snapshot: IndexSnapshot) -> None:
        """Record ``snapshot`` as matching what is on disk.

        Called after a restore, which republishes the loaded snapshot under
        a new version with unchanged content.
        """
        self._last_persisted_version = snapshot.version
        self._last_persisted_at = time.monotonic()

    def _read(self, model_name: Optional[str]) -> IndexSnapshot:
        try:
            payload = json.loads(self.snapshot_file.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptSnapshot(f"Cannot read {self.snapshot_file}: {e}") from e

        if not isinstance(payload, dict) or payload.get("schema_version") != SCHEMA_VERSION:
            raise CorruptSnapshot(f"Unsupported snapshot schema in {self.snapshot_file}")

        try:
            files = {
                entry.file_path: entry
                for entry in (FileIndexEntry.from_dict(item) for item in payload["files"])
            }
            chunks = {
                chunk.id: chunk
                for chunk in (CodeChunk.from_dict(item) for item in payload["chunks"])
            }
            vector_ids = list(payload["vector_ids"])
            version = int(payload.get("version", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptSnapshot(f"Malformed snapshot {self.snapshot_file}: {e}") from e

        for entry in files.values():
            missing = [chunk_id for chunk_id in entry.chunk_ids if chunk_id not in chunks]
            if missing:
                raise CorruptSnapshot(f"File {entry.file_path} references unknown chunks: {missing[:3]}")

        stored_model = payload.get("model_name")
        records = {}
        if model_name is not None and stored_model != model_name:
            logger.warning(
                "Snapshot was built with another embedding model, vectors will be recomputed",
                stored_model=stored_model,
                model=model_name,
            )
        elif vector_ids:
            records = self._read_vectors(vector_ids, chunks, version)

        return IndexSnapshot(
            version=version,
            files=MappingProxyType(files),
            chunks=MappingProxyType(chunks),
            records=MappingProxyType(records),
            model_name=model_name or stored_model,
            restored=True,
        )

    def _read_vectors(self, vector_ids, chunks, version):
        try:
            with np.load(self.vectors_file, allow_pickle=False) as archive:
                stored_ids = archive["ids"].tolist()
                matrix = archive["matrix"]
                stored_version = int(archive["version"])
        except _VECTOR_READ_ERRORS as e:
            raise CorruptSnapshot(f"Cannot read {self.vectors_file}: {e}") from e

        if stored_version != version or stored_ids != vector_ids:
            raise CorruptSnapshot(
                f"{self.vectors_file} (version {stored_version}) does not belong to "
                f"{self.snapshot_file} (version {version})"
            )
        if matrix.ndim != 2 or matrix.shape[0] != len(vector_ids):
            raise CorruptSnapshot(
                f"Vector matrix shape {matrix.shape} does not match {len(vector_ids)} ids"
            )

        return {
            chunk_id: EmbeddingRecord.create(chunk_id, matrix[row])
            for row, chunk_id in enumerate(vector_ids)
            if chunk_id in chunks
        }
