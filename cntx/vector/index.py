"""Incremental index coordinator: keeps the vector store in step with the file tree."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from cntx.observability.logging import get_logger
from cntx.observability.metrics import MetricsCollector, get_metrics_collector
from cntx.vector.chunking import ChunkExtractor, assign_chunk_ids
from cntx.vector.embeddings import EmbeddingPriority, EmbeddingQueue, build_embedding_text
from cntx.vector.exceptions import EmbeddingUnavailable, StaleWriteDiscarded
from cntx.vector.heuristics import HeuristicClassifier
from cntx.vector.models import (
    ChangeKind,
    CodeChunk,
    FileChangeEvent,
    FileIndexEntry,
    FileState,
    sha256_text,
)
from cntx.vector.persistence import SnapshotPersistence
from cntx.vector.provider import FileProvider
from cntx.vector.store import VectorStore

logger = get_logger(__name__)


def normalize_source(text: str) -> str:
    """Normalize line endings and trailing whitespace before hashing."""
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def file_content_hash(text: str) -> str:
    return sha256_text(normalize_source(text))


@dataclass
class PendingChange:
    """Latest unprocessed change for one file."""
    event: FileChangeEvent
    generation: int
    due_at: float


@dataclass
class FileOutcome:
    status: str
    chunks_indexed: int = 0
    chunks_pending: int = 0
    chunks_embedded: int = 0


@dataclass
class PreparedChunk:
    chunk: CodeChunk
    vector: Optional[np.ndarray] = None
    reuse_record: bool = False


@dataclass
class BuildStats:
    files_processed: int = 0
    files_skipped: int = 0
    files_removed: int = 0
    chunks_indexed: int = 0
    chunks_pending: int = 0
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'files_processed': self.files_processed,
            'files_skipped': self.files_skipped,
            'files_removed': self.files_removed,
            'chunks_indexed': self.chunks_indexed,
            'chunks_pending': self.chunks_pending,
            'errors': list(self.errors),
            'duration': self.duration,
        }


class IndexCoordinator:
    """Single writer of the vector store.

    Change events are debounced per file. A processor task reindexes due
    files one at a time and publishes each file's result as one snapshot.
    A pass whose file changed again while it ran is thrown away and the
    newer change runs straight after.
    """

    def __init__(
        self,
        store: VectorStore,
        provider: FileProvider,
        extractor: ChunkExtractor,
        classifier: HeuristicClassifier,
        embedding_queue: EmbeddingQueue,
        persistence: Optional[SnapshotPersistence] = None,
        metrics: Optional[MetricsCollector] = None,
        debounce_seconds: float = 0.3,
        event_queue_size: int = 1024,
        max_embed_chars: int = 8192,
    ):
        self.store = store
        self.provider = provider
        self.extractor = extractor
        self.classifier = classifier
        self.embedding_queue = embedding_queue
        self.persistence = persistence
        self.metrics = metrics or get_metrics_collector()
        self.debounce_seconds = debounce_seconds
        self.max_embed_chars = max_embed_chars

        self._events: asyncio.Queue = asyncio.Queue(maxsize=event_queue_size)
        self._pending: Dict[str, PendingChange] = {}
        self._generations: Dict[str, int] = {}
        self._states: Dict[str, FileState] = {}
        self._in_flight: Optional[str] = None
        self._wakeup = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Restore the persisted snapshot and start the background tasks."""
        if self.running:
            return

        if self.persistence is not None:
            snapshot = self.persistence.load(self.embedding_queue.model_name)
            if snapshot is not None:
                self.store.restore(snapshot)
                # Same content as on disk, only the version moved
                self.persistence.mark_persisted(self.store.current)
                for file_path in snapshot.files:
                    self._states[file_path] = FileState.INDEXED
                logger.info(
                    "Restored persisted index",
                    files=len(snapshot.files),
                    chunks=len(snapshot.chunks),
                    pending=len(snapshot.pending_chunk_ids),
                )

        await self.embedding_queue.start()
        self._tasks = [
            asyncio.create_task(self._receive_events(), name="cntx-index-receiver"),
            asyncio.create_task(self._process_changes(), name="cntx-index-processor"),
        ]
        if self.persistence is not None:
            self._tasks.append(asyncio.create_task(self._persist_periodically(), name="cntx-index-persist"))

        logger.info("Index coordinator started", debounce_seconds=self.debounce_seconds)

    async def stop(self) -> None:
        """Cancel background work and write a final snapshot if needed."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._in_flight = None

        await self.persist_if_dirty(force=True)
        await self.embedding_queue.stop()
        logger.info("Index coordinator stopped")

    async def notify(self, event: FileChangeEvent) -> None:
        """Enqueue a change event; waits when the event queue is full."""
        await self._events.put(event)

    def get_file_state(self, file_path: str) -> FileState:
        state = self._states.get(file_path)
        if state is not None:
            return state
        if file_path in self.store.current.files:
            return FileState.INDEXED
        return FileState.UNTRACKED

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Wait until no queued, pending or in-flight change remains."""
        while True:
            if self._events.empty() and not self._pending and self._in_flight is None:
                return
            if not self.running:
                return
            await asyncio.sleep(poll_interval)

    # Debounce

    def _stage(self, event: FileChangeEvent, delay: float) -> int:
        loop = asyncio.get_running_loop()
        generation = self._generations.get(event.file_path, 0) + 1
        self._generations[event.file_path] = generation
        self._pending[event.file_path] = PendingChange(
            event=event,
            generation=generation,
            due_at=loop.time() + delay,
        )
        self._wakeup.set()
        return generation

    async def _mark_stale_if_changed(self, event: FileChangeEvent, generation: int) -> None:
        """Move an indexed file to STALE when its content hash changed.

        Later events in the same debounce window find the file already
        STALE and skip the read. The read and hash run off the event loop.
        """
        file_path = event.file_path
        if self.get_file_state(file_path) != FileState.INDEXED:
            return

        changed = await asyncio.to_thread(self._content_changed, event)

        # The pass for this change may have started or finished meanwhile
        pending = self._pending.get(file_path)
        if (
            changed
            and pending is not None
            and pending.generation == generation
            and self.get_file_state(file_path) == FileState.INDEXED
        ):
            self._states[file_path] = FileState.STALE

    def _content_changed(self, event: FileChangeEvent) -> bool:
        entry = self.store.current.files.get(event.file_path)
        if entry is None or event.kind == ChangeKind.DELETED:
            return True
        content = event.content
        if content is None:
            try:
                content = self.provider.read(event.file_path)
            except (OSError, ValueError):
                return True
        return file_content_hash(content.decode("utf-8", errors="replace")) != entry.content_hash

    async def _receive_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                generation = self._stage(event, self.debounce_seconds)
                await self._mark_stale_if_changed(event, generation)
            finally:
                self._events.task_done()

    def _next_due(self) -> Optional[Tuple[str, PendingChange]]:
        if not self._pending:
            return None
        return min(self._pending.items(), key=lambda item: (item[1].due_at, item[0]))

    async def _process_changes(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            due = self._next_due()
            if due is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            file_path, change = due
            delay = change.due_at - loop.time()
            if delay > 0:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                continue

            del self._pending[file_path]
            self._in_flight = file_path
            try:
                await self._run_pass(file_path, change)
            finally:
                self._in_flight = None

    async def _run_pass(self, file_path: str, change: PendingChange) -> None:
        self.metrics.increment_counter("index.passes")
        async with self._write_lock:
            self.classifier.reload_if_changed()
            with self.metrics.time_operation("index.pass_duration"):
                try:
                    outcome = await self._index_file(file_path, change.event, change.generation)
                    logger.debug("Index pass finished", file_path=file_path, status=outcome.status)
                except StaleWriteDiscarded as e:
                    self.metrics.increment_counter("index.stale_writes_discarded")
                    logger.info("Discarded superseded pass", file_path=e.file_path)
                    newer = self._pending.get(file_path)
                    if newer is not None:
                        newer.due_at = asyncio.get_running_loop().time()
                except Exception as e:
                    self.metrics.increment_counter("index.errors")
                    logger.error("Index pass failed", file_path=file_path, error=str(e), exc_info=True)

    # Indexing pipeline

    def _check_generation(self, file_path: str, generation: Optional[int]) -> None:
        if generation is not None and self._generations.get(file_path, 0) != generation:
            raise StaleWriteDiscarded(file_path)

    async def _index_file(
        self,
        file_path: str,
        event: Optional[FileChangeEvent] = None,
        generation: Optional[int] = None,
        force: bool = False,
    ) -> FileOutcome:
        snapshot = self.store.current
        entry = snapshot.files.get(file_path)

        content: Optional[bytes]
        if event is not None and event.kind == ChangeKind.DELETED:
            content = None
        elif event is not None and event.content is not None:
            content = event.content
        else:
            try:
                content = self.provider.read(file_path)
            except FileNotFoundError:
                content = None

        if content is None:
            self._check_generation(file_path, generation)
            return self._remove_file(file_path)

        text = content.decode("utf-8", errors="replace")
        content_hash = file_content_hash(text)

        if entry is not None and entry.content_hash == content_hash and not force:
            pending_ids = [cid for cid in entry.chunk_ids if cid not in snapshot.records]
            if not pending_ids:
                self._states[file_path] = FileState.INDEXED
                return FileOutcome(status="skipped", chunks_indexed=len(entry.chunk_ids))
            return await self._embed_pending(file_path, pending_ids, generation)

        self._states[file_path] = FileState.REINDEXING

        prepared = await self._prepare_chunks(file_path, text, force)
        self._check_generation(file_path, generation)

        new_ids = [p.chunk.id for p in prepared]
        with self.store.batch() as staged:
            if entry is not None:
                for stale_id in set(entry.chunk_ids) - set(new_ids):
                    staged.remove(stale_id)
            for item in prepared:
                if item.reuse_record:
                    staged.update_metadata(item.chunk)
                else:
                    staged.upsert(item.chunk, item.vector)
            staged.set_file(FileIndexEntry(
                file_path=file_path,
                content_hash=content_hash,
                chunk_ids=tuple(new_ids),
                last_indexed_at=time.time(),
            ))
            staged.model_name = self.embedding_queue.model_name

        self._states[file_path] = FileState.INDEXED
        pending = sum(1 for p in prepared if p.vector is None and not p.reuse_record)
        embedded = sum(1 for p in prepared if p.vector is not None)
        logger.info(
            "File indexed",
            file_path=file_path,
            chunks=len(prepared),
            embedded=embedded,
            reused=sum(1 for p in prepared if p.reuse_record),
            pending=pending,
        )
        return FileOutcome(
            status="indexed",
            chunks_indexed=len(prepared),
            chunks_pending=pending,
            chunks_embedded=embedded,
        )

    async def _prepare_chunks(self, file_path: str, text: str, force: bool) -> List[PreparedChunk]:
        snapshot = self.store.current
        prepared = []

        for chunk_id, candidate in assign_chunk_ids(self.extractor.extract(file_path, text)):
            classification = self.classifier.classify(candidate)
            chunk = CodeChunk(
                id=chunk_id,
                name=candidate.name,
                file_path=candidate.file_path,
                start_line=candidate.start_line,
                end_line=candidate.end_line,
                source_text=candidate.source_text,
                subtype=candidate.subtype,
                language=candidate.language,
                is_exported=candidate.is_exported,
                is_async=candidate.is_async,
                purpose=classification.purpose,
                domain_tags=classification.domain_tags,
                pattern_tags=classification.pattern_tags,
                complexity=classification.complexity,
                content_hash=candidate.content_hash,
                includes=candidate.includes,
                low_confidence=candidate.low_confidence,
            )

            previous = snapshot.chunks.get(chunk_id)
            if (
                not force
                and previous is not None
                and chunk_id in snapshot.records
                and previous.content_hash == chunk.content_hash
                and previous.purpose == chunk.purpose
                and previous.domain_tags == chunk.domain_tags
                and previous.pattern_tags == chunk.pattern_tags
            ):
                prepared.append(PreparedChunk(chunk=chunk, reuse_record=True))
                continue

            prepared.append(PreparedChunk(chunk=chunk, vector=await self._embed_chunk(chunk)))

        return prepared

    async def _embed_chunk(self, chunk: CodeChunk) -> Optional[np.ndarray]:
        text = build_embedding_text(
            chunk.name,
            chunk.purpose,
            sorted(chunk.domain_tags | chunk.pattern_tags),
            chunk.source_text,
            self.max_embed_chars,
        )
        try:
            return await self.embedding_queue.embed(text, EmbeddingPriority.INDEXING)
        except EmbeddingUnavailable as e:
            logger.warning("Embedding unavailable, chunk left pending", chunk_id=chunk.id, error=str(e))
            return None

    async def _embed_pending(
        self,
        file_path: str,
        pending_ids: List[str],
        generation: Optional[int] = None,
    ) -> FileOutcome:
        snapshot = self.store.current
        vectors: Dict[str, np.ndarray] = {}
        for chunk_id in pending_ids:
            chunk = snapshot.chunks.get(chunk_id)
            if chunk is None:
                continue
            vector = await self._embed_chunk(chunk)
            if vector is not None:
                vectors[chunk_id] = vector

        self._check_generation(file_path, generation)

        if vectors:
            with self.store.batch() as staged:
                current = self.store.current
                for chunk_id, vector in vectors.items():
                    chunk = current.chunks.get(chunk_id)
                    if chunk is not None:
                        staged.upsert(chunk, vector)
                staged.model_name = self.embedding_queue.model_name

        self._states[file_path] = FileState.INDEXED
        logger.info(
            "Retried pending embeddings",
            file_path=file_path,
            embedded=len(vectors),
            still_pending=len(pending_ids) - len(vectors),
        )
        entry = self.store.current.files.get(file_path)
        return FileOutcome(
            status="retried",
            chunks_indexed=len(entry.chunk_ids) if entry else 0,
            chunks_pending=len(pending_ids) - len(vectors),
            chunks_embedded=len(vectors),
        )

    def _remove_file(self, file_path: str) -> FileOutcome:
        if file_path not in self.store.current.files:
            self._states.pop(file_path, None)
            return FileOutcome(status="skipped")

        with self.store.batch() as staged:
            removed = staged.remove_file(file_path)

        self._states[file_path] = FileState.REMOVED
        self.metrics.increment_counter("index.files_removed")
        logger.info("File removed from index", file_path=file_path, chunks=len(removed))
        return FileOutcome(status="removed")

    # Bulk operations

    async def build_index(self, force: bool = False) -> Dict[str, Any]:
        """Index every file the provider lists, without debouncing.

        Unchanged files are skipped unless ``force`` is set; files that
        disappeared from the provider are removed.

        Returns:
            Dictionary with build statistics
        """
        start_time = time.time()
        stats = BuildStats()

        async with self._write_lock:
            self.classifier.reload_if_changed()
            logger.info("Starting index build", force=force)

            try:
                files = list(self.provider.list_files())
            except OSError as e:
                stats.errors.append(f"Cannot list files: {e}")
                stats.duration = time.time() - start_time
                logger.error("Index build failed", error=str(e))
                return stats.to_dict()

            logger.info("Found files to index", count=len(files))

            for file_path in files:
                try:
                    outcome = await self._index_file(file_path, force=force)
                except Exception as e:
                    error_msg = f"Error processing {file_path}: {e}"
                    logger.error("Failed to index file", file_path=file_path, error=str(e))
                    self.metrics.increment_counter("index.errors")
                    stats.errors.append(error_msg)
                    continue

                if outcome.status == "removed":
                    stats.files_removed += 1
                elif outcome.status == "skipped":
                    stats.files_skipped += 1
                else:
                    stats.files_processed += 1
                    stats.chunks_indexed += outcome.chunks_indexed
                stats.chunks_pending += outcome.chunks_pending

            listed = set(files)
            for file_path in sorted(set(self.store.current.files) - listed):
                self._remove_file(file_path)
                stats.files_removed += 1

        stats.duration = time.time() - start_time
        logger.info(
            "Index build completed",
            duration=round(stats.duration, 3),
            files_processed=stats.files_processed,
            files_skipped=stats.files_skipped,
            files_removed=stats.files_removed,
            chunks_indexed=stats.chunks_indexed,
            chunks_pending=stats.chunks_pending,
        )
        await self.persist_if_dirty()
        return stats.to_dict()

    async def retry_pending_embeddings(self) -> int:
        """Embed every chunk still waiting for a vector.

        Returns:
            Number of chunks that received an embedding
        """
        embedded = 0
        async with self._write_lock:
            snapshot = self.store.current
            for file_path, entry in sorted(snapshot.files.items()):
                pending_ids = [cid for cid in entry.chunk_ids if cid not in snapshot.records]
                if pending_ids:
                    outcome = await self._embed_pending(file_path, pending_ids)
                    embedded += outcome.chunks_embedded
        return embedded

    # Persistence

    async def persist_if_dirty(self, force: bool = False) -> bool:
        if self.persistence is None:
            return False

        snapshot = self.store.current
        if force:
            if not self.persistence.is_dirty(snapshot):
                return False
        elif not self.persistence.should_persist(snapshot):
            return False

        try:
            await asyncio.to_thread(self.persistence.save, snapshot)
        except OSError as e:
            logger.error("Snapshot persistence failed", error=str(e))
            return False
        return True

    async def _persist_periodically(self) -> None:
        interval = max(self.persistence.persist_interval, 0.05)
        while True:
            await asyncio.sleep(interval)
            await self.persist_if_dirty()
