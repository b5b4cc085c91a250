"""Service facade that wires the index components together."""

from typing import Any, Dict, List, Optional, Union

from cntx.config import Settings, get_settings, validate_startup_config
from cntx.observability.logging import configure_from_settings, get_logger
from cntx.observability.metrics import MetricsCollector
from cntx.vector.chunking import ChunkExtractor
from cntx.vector.embeddings import Embedder, EmbeddingQueue, create_embedder
from cntx.vector.heuristics import HeuristicClassifier
from cntx.vector.index import IndexCoordinator
from cntx.vector.models import ChunkSubtype, CodeChunk, FileChangeEvent, FileState
from cntx.vector.persistence import SnapshotPersistence
from cntx.vector.provider import BundleMembershipProvider, FileProvider, WorkspaceFileProvider
from cntx.vector.query import QueryEngine
from cntx.vector.search import SearchHit
from cntx.vector.store import VectorStore

logger = get_logger(__name__)


class IndexService:
    """Owns one index: its store, embedder, coordinator and query engine."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        embedder: Optional[Embedder] = None,
        provider: Optional[FileProvider] = None,
        bundle_membership: Optional[BundleMembershipProvider] = None,
        metrics: Optional[MetricsCollector] = None,
        persist: bool = True,
    ):
        """Initialize the service.

        Args:
            settings: Configuration; ``get_settings()`` when omitted
            embedder: Embedding backend; built from settings when omitted
            provider: File source; the workspace directory when omitted
            bundle_membership: Maps a file to the bundles that contain it
            metrics: Collector for this service's metrics
            persist: Whether snapshots are read from and written to ``index_path``
        """
        self.settings = settings or get_settings()
        self.metrics = metrics or MetricsCollector()

        self.embedder = embedder or create_embedder(self.settings)
        self.provider = provider or WorkspaceFileProvider(self.settings.workspace_root)
        self.store = VectorStore(model_name=self.embedder.model_name)
        self.extractor = ChunkExtractor(
            min_chunk_chars=self.settings.min_chunk_chars,
            max_file_bytes=self.settings.max_file_bytes,
        )
        self.classifier = HeuristicClassifier(rules_path=self.settings.rules_path)
        self.embedding_queue = EmbeddingQueue(
            self.embedder,
            maxsize=self.settings.embedding_queue_size,
            metrics=self.metrics,
        )
        self.persistence = SnapshotPersistence(
            self.settings.index_path,
            persist_interval=self.settings.persist_interval_seconds,
            metrics=self.metrics,
        ) if persist else None

        self.coordinator = IndexCoordinator(
            store=self.store,
            provider=self.provider,
            extractor=self.extractor,
            classifier=self.classifier,
            embedding_queue=self.embedding_queue,
            persistence=self.persistence,
            metrics=self.metrics,
            debounce_seconds=self.settings.debounce_seconds,
            event_queue_size=self.settings.event_queue_size,
            max_embed_chars=self.settings.max_embed_chars,
        )
        self.query_engine = QueryEngine(
            store=self.store,
            embedding_queue=self.embedding_queue,
            classifier=self.classifier,
            bundle_membership=bundle_membership,
            metrics=self.metrics,
        )

        logger.info(
            "Index service initialized",
            workspace=str(self.settings.workspace_root),
            model=self.embedder.model_name,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "IndexService":
        """Validate settings, configure logging from them and build a service.

        Raises:
            RuntimeError: If the workspace or rule table is missing
        """
        settings = validate_startup_config(settings)
        configure_from_settings(settings)
        return cls(settings, **kwargs)

    async def start(self, build: bool = True) -> Optional[Dict[str, Any]]:
        """Start background indexing; with ``build`` reconcile with the file tree first."""
        await self.coordinator.start()
        if build:
            return await self.coordinator.build_index()
        return None

    async def stop(self) -> None:
        await self.coordinator.stop()

    async def __aenter__(self) -> "IndexService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def notify(self, event: FileChangeEvent) -> None:
        await self.coordinator.notify(event)

    async def build_index(self, force: bool = False) -> Dict[str, Any]:
        return await self.coordinator.build_index(force=force)

    async def wait_idle(self) -> None:
        await self.coordinator.wait_idle()

    async def retry_pending_embeddings(self) -> int:
        return await self.coordinator.retry_pending_embeddings()

    def get_file_state(self, file_path: str) -> FileState:
        return self.coordinator.get_file_state(file_path)

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> List[SearchHit]:
        return await self.query_engine.search(
            query,
            limit=self.settings.default_search_limit if limit is None else limit,
            min_similarity=self.settings.default_min_similarity if min_similarity is None else min_similarity,
        )

    def search_by_type(self, subtype: Union[ChunkSubtype, str]) -> List[CodeChunk]:
        return self.query_engine.search_by_type(subtype)

    def search_by_domain(self, domain: str) -> List[CodeChunk]:
        return self.query_engine.search_by_domain(domain)

    def get_status(self) -> Dict[str, Any]:
        return self.query_engine.get_status()

    def get_projection(self) -> List[Dict[str, Any]]:
        return self.query_engine.get_projection()

    def suggest_bundles_for_file(self, file_path: str) -> List[str]:
        return self.query_engine.suggest_bundles_for_file(file_path)

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.get_all_metrics()
