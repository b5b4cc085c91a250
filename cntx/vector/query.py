"""Read-side query engine over the current index snapshot."""

from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Union

import numpy as np

from cntx.observability.logging import get_logger
from cntx.observability.metrics import MetricsCollector, get_metrics_collector
from cntx.vector.embeddings import EmbeddingPriority, EmbeddingQueue
from cntx.vector.exceptions import EmbeddingUnavailable, QueryError
from cntx.vector.heuristics import HeuristicClassifier
from cntx.vector.models import ChunkSubtype, CodeChunk
from cntx.vector.projection import ProjectionCache
from cntx.vector.provider import BundleMembershipProvider
from cntx.vector.search import SearchHit, SearchRanker, SearchResult
from cntx.vector.store import ChunkFilter, VectorStore

logger = get_logger(__name__)


def weighted_jaccard(left: Dict[str, float], right: Dict[str, float]) -> float:
    """sum(min) / sum(max) over the union of keys."""
    keys = set(left) | set(right)
    if not keys:
        return 0.0
    upper = sum(max(left.get(k, 0.0), right.get(k, 0.0)) for k in keys)
    if upper == 0:
        return 0.0
    return sum(min(left.get(k, 0.0), right.get(k, 0.0)) for k in keys) / upper


def _normalize(counts: Dict[str, float]) -> Dict[str, float]:
    total = float(sum(counts.values()))
    if total == 0:
        return {}
    return {key: value / total for key, value in counts.items()}


class QueryEngine:
    """Serves searches, status and derived views.

    Every call reads ``store.current`` once, so a query sees a single
    consistent snapshot even while the coordinator publishes new ones.
    """

    def __init__(
        self,
        store: VectorStore,
        embedding_queue: EmbeddingQueue,
        classifier: Optional[HeuristicClassifier] = None,
        bundle_membership: Optional[BundleMembershipProvider] = None,
        metrics: Optional[MetricsCollector] = None,
        ranker: Optional[SearchRanker] = None,
    ):
        self.store = store
        self.embedding_queue = embedding_queue
        self.classifier = classifier
        self.bundle_membership = bundle_membership
        self.metrics = metrics or get_metrics_collector()
        self.ranker = ranker or SearchRanker()
        self._projection = ProjectionCache()

    async def search(
        self,
        text: str,
        limit: int = 10,
        min_similarity: float = 0.2,
        filter: Optional[ChunkFilter] = None,
    ) -> List[SearchHit]:
        """Semantic search for ``text``.

        Raises:
            QueryError: If the query cannot be embedded or compared
        """
        snapshot = self.store.current

        with self.metrics.time_operation("query.search_duration"):
            try:
                vector = await self.embedding_queue.embed(text, EmbeddingPriority.QUERY)
            except EmbeddingUnavailable as e:
                logger.warning("Query embedding unavailable", error=str(e))
                raise QueryError(f"Cannot embed query: {e}") from e

            try:
                hits = snapshot.search(vector, limit, min_similarity, filter)
            except ValueError as e:
                raise QueryError(str(e)) from e

        logger.info("Search completed", query=text[:100], results=len(hits), version=snapshot.version)
        return hits

    async def search_with_snippets(
        self,
        text: str,
        limit: int = 10,
        min_similarity: float = 0.2,
    ) -> List[SearchResult]:
        hits = await self.search(text, limit, min_similarity)
        return self.ranker.decorate(hits, text)

    def search_by_type(self, subtype: Union[ChunkSubtype, str]) -> List[CodeChunk]:
        try:
            return self.store.current.search_by_type(subtype)
        except ValueError as e:
            raise QueryError(f"Unknown chunk subtype: {subtype}") from e

    def search_by_domain(self, domain: str) -> List[CodeChunk]:
        return self.store.current.search_by_domain(domain)

    def get_file_chunks(self, file_path: str) -> List[CodeChunk]:
        return self.store.current.chunks_for_file(file_path)

    def get_status(self) -> Dict[str, Any]:
        snapshot = self.store.current
        return {
            "chunk_count": len(snapshot.chunks),
            "embedding_count": len(snapshot.records),
            "pending_count": len(snapshot.chunks) - len(snapshot.records),
            "file_count": len(snapshot.files),
            "model_name": snapshot.model_name or self.embedding_queue.model_name,
            "cached": snapshot.restored,
            "version": snapshot.version,
        }

    def get_projection(self) -> List[Dict[str, Any]]:
        """2D PCA coordinates of every embedded chunk, cached per snapshot version."""
        return self._projection.get(self.store.current)

    def get_similarity_network(self, limit: int = 100, threshold: float = 0.7) -> Dict[str, List[Dict[str, Any]]]:
        """Nodes and edges between the first ``limit`` embedded chunks above ``threshold``."""
        snapshot = self.store.current
        ids, matrix = snapshot.embedding_matrix()
        ids = ids[:max(0, limit)]
        if not ids:
            return {"nodes": [], "edges": []}

        vectors = matrix[:len(ids)].astype(np.float64)
        norms = np.linalg.norm(vectors, axis=1)
        norms[norms == 0] = 1.0
        unit = vectors / norms[:, None]
        similarities = unit @ unit.T

        nodes = []
        for chunk_id in ids:
            chunk = snapshot.chunks[chunk_id]
            nodes.append({
                "id": chunk_id,
                "name": chunk.name,
                "file_path": chunk.file_path,
                "subtype": chunk.subtype.value,
                "purpose": chunk.purpose,
            })

        edges = []
        rows, cols = np.nonzero(np.triu(similarities >= threshold, k=1))
        for i, j in zip(rows, cols):
            edges.append({
                "source": ids[i],
                "target": ids[j],
                "similarity": float(min(1.0, similarities[i, j])),
            })
        edges.sort(key=lambda e: (-e["similarity"], e["source"], e["target"]))

        return {"nodes": nodes, "edges": edges}

    def suggest_bundles_for_file(self, file_path: str) -> List[str]:
        """Bundles whose members carry tags most like those of ``file_path``.

        Falls back to path rules from the rule table when no bundle shares a tag.
        """
        snapshot = self.store.current
        current_bundles = set(self.bundle_membership(file_path)) if self.bundle_membership else set()

        file_tags = set()
        for chunk in snapshot.chunks_for_file(file_path):
            file_tags |= chunk.domain_tags | chunk.pattern_tags

        ranked: List[str] = []
        if file_tags and self.bundle_membership is not None:
            distributions: Dict[str, Counter] = defaultdict(Counter)
            for other_path in snapshot.files:
                bundles = self.bundle_membership(other_path)
                if not bundles:
                    continue
                tags = Counter()
                for chunk in snapshot.chunks_for_file(other_path):
                    tags.update(chunk.domain_tags | chunk.pattern_tags)
                for bundle in bundles:
                    distributions[bundle].update(tags)

            file_weights = _normalize({tag: 1.0 for tag in file_tags})
            scored = []
            for bundle, counts in distributions.items():
                if bundle in current_bundles:
                    continue
                score = weighted_jaccard(file_weights, _normalize(dict(counts)))
                if score > 0:
                    scored.append((score, bundle))
            scored.sort(key=lambda item: (-item[0], item[1]))
            ranked = [bundle for _, bundle in scored]

        if ranked:
            return ranked

        if self.classifier is None:
            return []
        return [b for b in self.classifier.suggest_bundles_by_path(file_path) if b not in current_bundles]
