"""Immutable index snapshots and the copy-on-write vector store."""

import dataclasses
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from functools import cached_property
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np

from cntx.observability.logging import get_logger
from cntx.vector.models import ChunkSubtype, CodeChunk, EmbeddingRecord, FileIndexEntry
from cntx.vector.search import SearchHit, cosine_scores, select_top_k

logger = get_logger(__name__)

ChunkFilter = Callable[[CodeChunk], bool]


def _metadata_order(chunk: CodeChunk) -> Tuple[str, int, str]:
    return (chunk.file_path, chunk.start_line, chunk.id)


@dataclass(frozen=True)
class IndexSnapshot:
    """A consistent, read-only view of the whole index.

    Readers take one snapshot per query and never observe a partially
    applied update.
    """
    version: int
    files: Mapping[str, FileIndexEntry]
    chunks: Mapping[str, CodeChunk]
    records: Mapping[str, EmbeddingRecord]
    model_name: Optional[str] = None
    restored: bool = False

    @classmethod
    def empty(cls, model_name: Optional[str] = None) -> "IndexSnapshot":
        return cls(
            version=0,
            files=MappingProxyType({}),
            chunks=MappingProxyType({}),
            records=MappingProxyType({}),
            model_name=model_name,
        )

    @cached_property
    def _vector_index(self) -> Tuple[Tuple[str, ...], np.ndarray, np.ndarray]:
        """Dense matrix of all records, built on first search."""
        ids = tuple(sorted(self.records))
        if not ids:
            return ids, np.zeros((0, 0), dtype=np.float32), np.zeros(0, dtype=np.float32)

        matrix = np.vstack([self.records[chunk_id].vector for chunk_id in ids]).astype(np.float32, copy=False)
        norms = np.sqrt(np.array([self.records[chunk_id].norm_squared for chunk_id in ids], dtype=np.float32))
        matrix.setflags(write=False)
        return ids, matrix, norms

    @property
    def dimension(self) -> Optional[int]:
        ids, matrix, _ = self._vector_index
        return int(matrix.shape[1]) if ids else None

    @property
    def pending_chunk_ids(self) -> List[str]:
        """Chunks without an embedding, in id order."""
        return sorted(chunk_id for chunk_id in self.chunks if chunk_id not in self.records)

    def embedding_matrix(self) -> Tuple[Tuple[str, ...], np.ndarray]:
        ids, matrix, _ = self._vector_index
        return ids, matrix

    def chunks_for_file(self, file_path: str) -> List[CodeChunk]:
        entry = self.files.get(file_path)
        if entry is None:
            return []
        return [self.chunks[chunk_id] for chunk_id in entry.chunk_ids if chunk_id in self.chunks]

    def search(
        self,
        query_vector: np.ndarray,
        k: int,
        min_similarity: float,
        filter: Optional[ChunkFilter] = None,
    ) -> List[SearchHit]:
        """Rank embedded chunks by cosine similarity to ``query_vector``.

        Args:
            query_vector: Vector of the embedder's dimension
            k: Maximum number of hits
            min_similarity: Hits below this similarity are dropped
            filter: Optional predicate over chunks; only passing chunks are scored

        Returns:
            At most ``k`` hits, similarity descending, ties by (file_path, name, id)

        Raises:
            ValueError: If the query dimension differs from the stored vectors
        """
        ids, matrix, norms = self._vector_index
        if not ids or k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if query.shape[0] != matrix.shape[1]:
            raise ValueError(
                f"Query vector has dimension {query.shape[0]}, index holds dimension {matrix.shape[1]}"
            )

        if filter is not None:
            rows = [i for i, chunk_id in enumerate(ids) if filter(self.chunks[chunk_id])]
            if not rows:
                return []
            row_index = np.array(rows, dtype=np.int64)
            scores = cosine_scores(matrix[row_index], norms[row_index], query)
        else:
            row_index = np.arange(len(ids))
            scores = cosine_scores(matrix, norms, query)

        passing = np.nonzero(scores >= min_similarity)[0]
        hits = [
            SearchHit(chunk_id=ids[row_index[i]], similarity=float(scores[i]), chunk=self.chunks[ids[row_index[i]]])
            for i in passing
        ]
        return select_top_k(hits, k, min_similarity)

    def search_by_type(self, subtype: Union[ChunkSubtype, str]) -> List[CodeChunk]:
        """All chunks of one subtype, embedded or not."""
        subtype = ChunkSubtype(subtype)
        return sorted((c for c in self.chunks.values() if c.subtype == subtype), key=_metadata_order)

    def search_by_domain(self, domain: str) -> List[CodeChunk]:
        """All chunks tagged with ``domain``, embedded or not."""
        return sorted((c for c in self.chunks.values() if domain in c.domain_tags), key=_metadata_order)


class SnapshotBatch:
    """Mutations staged against one base snapshot."""

    def __init__(self, base: IndexSnapshot):
        self.base = base
        self.model_name = base.model_name
        self.restored = base.restored
        self._files: Optional[Dict[str, FileIndexEntry]] = None
        self._chunks: Optional[Dict[str, CodeChunk]] = None
        self._records: Optional[Dict[str, EmbeddingRecord]] = None

    @property
    def files(self) -> Dict[str, FileIndexEntry]:
        if self._files is None:
            self._files = dict(self.base.files)
        return self._files

    @property
    def chunks(self) -> Dict[str, CodeChunk]:
        if self._chunks is None:
            self._chunks = dict(self.base.chunks)
        return self._chunks

    @property
    def records(self) -> Dict[str, EmbeddingRecord]:
        if self._records is None:
            self._records = dict(self.base.records)
        return self._records

    @property
    def changed(self) -> bool:
        return (
            self._files is not None
            or self._chunks is not None
            or self._records is not None
            or self.model_name != self.base.model_name
        )

    def set_file(self, entry: FileIndexEntry) -> None:
        self.files[entry.file_path] = entry

    def remove_file(self, file_path: str) -> List[str]:
        """Drop a file entry and all of its chunks; returns the removed ids."""
        if file_path not in self.files:
            return []
        entry = self.files.pop(file_path)
        for chunk_id in entry.chunk_ids:
            self.remove(chunk_id)
        return list(entry.chunk_ids)

    def upsert(self, chunk: CodeChunk, vector: Optional[np.ndarray] = None) -> None:
        """Replace ``chunk`` and its record; ``vector=None`` leaves it pending."""
        self.chunks[chunk.id] = chunk
        if vector is None:
            self.records.pop(chunk.id, None)
        else:
            self.records[chunk.id] = EmbeddingRecord.create(chunk.id, vector)

    def update_metadata(self, chunk: CodeChunk) -> None:
        """Replace a chunk's metadata and keep its existing record."""
        self.chunks[chunk.id] = chunk

    def set_record(self, record: EmbeddingRecord) -> None:
        if record.chunk_id in self.chunks:
            self.records[record.chunk_id] = record

    def remove(self, chunk_id: str) -> None:
        if chunk_id in self.chunks:
            del self.chunks[chunk_id]
        if chunk_id in self.records:
            del self.records[chunk_id]

    def clear(self) -> None:
        self._files = {}
        self._chunks = {}
        self._records = {}

    def build(self, version: int) -> IndexSnapshot:
        return IndexSnapshot(
            version=version,
            files=MappingProxyType(self._files) if self._files is not None else self.base.files,
            chunks=MappingProxyType(self._chunks) if self._chunks is not None else self.base.chunks,
            records=MappingProxyType(self._records) if self._records is not None else self.base.records,
            model_name=self.model_name,
            restored=self.restored,
        )


class VectorStore:
    """Holds the current ``IndexSnapshot`` and publishes new ones atomically.

    Only the index coordinator writes; readers use ``current``.
    """

    def __init__(self, model_name: Optional[str] = None):
        self._current = IndexSnapshot.empty(model_name)
        self._publish_lock = threading.Lock()
        self._open_batch: Optional[SnapshotBatch] = None

    @property
    def current(self) -> IndexSnapshot:
        return self._current

    @contextmanager
    def batch(self) -> Iterator[SnapshotBatch]:
        """Stage mutations and publish them as one new snapshot on exit.

        Nothing is published if the block raises.
        """
        if self._open_batch is not None:
            yield self._open_batch
            return

        staged = SnapshotBatch(self._current)
        self._open_batch = staged
        try:
            yield staged
        finally:
            self._open_batch = None

        if staged.changed:
            self._publish(staged)

    def _publish(self, staged: SnapshotBatch) -> None:
        with self._publish_lock:
            if staged.base is not self._current:
                # Single writer: a base mismatch means a programming error
                raise RuntimeError("Snapshot batch was built on a stale base")
            self._current = staged.build(self._current.version + 1)

        logger.debug(
            "Published index snapshot",
            version=self._current.version,
            chunks=len(self._current.chunks),
            embeddings=len(self._current.records),
        )

    def upsert(self, chunk: CodeChunk, vector: Optional[np.ndarray] = None) -> None:
        with self.batch() as staged:
            staged.upsert(chunk, vector)

    def remove(self, chunk_id: str) -> None:
        with self.batch() as staged:
            staged.remove(chunk_id)

    def search(
        self,
        query_vector: np.ndarray,
        k: int,
        min_similarity: float,
        filter: Optional[ChunkFilter] = None,
    ) -> List[SearchHit]:
        return self._current.search(query_vector, k, min_similarity, filter)

    def search_by_type(self, subtype: Union[ChunkSubtype, str]) -> List[CodeChunk]:
        return self._current.search_by_type(subtype)

    def search_by_domain(self, domain: str) -> List[CodeChunk]:
        return self._current.search_by_domain(domain)

    def snapshot(self) -> IndexSnapshot:
        return self._current

    def restore(self, snapshot: IndexSnapshot) -> None:
        """Replace the whole index with ``snapshot`` under a new version."""
        with self._publish_lock:
            version = max(self._current.version, snapshot.version) + 1
            self._current = dataclasses.replace(snapshot, version=version)
        logger.info("Index restored", version=version, chunks=len(snapshot.chunks))
