"""Semantic chunk index: extraction, classification, embeddings and search."""

from .chunking import ChunkExtractor, LanguageDetector, assign_chunk_ids
from .embeddings import (
    BedrockEmbedder,
    Embedder,
    EmbeddingPriority,
    EmbeddingQueue,
    SentenceTransformerEmbedder,
)
from .exceptions import (
    CntxIndexError,
    CorruptSnapshot,
    EmbeddingUnavailable,
    ParseError,
    QueryError,
    RuleTableError,
    StaleWriteDiscarded,
)
from .heuristics import Classification, HeuristicClassifier, RuleTable
from .index import IndexCoordinator
from .models import (
    ChangeKind,
    ChunkSubtype,
    CodeChunk,
    Complexity,
    ComplexityLevel,
    EmbeddingRecord,
    FileChangeEvent,
    FileIndexEntry,
    FileState,
)
from .persistence import SnapshotPersistence
from .provider import FileProvider, StaticBundleMembership, WorkspaceFileProvider
from .query import QueryEngine
from .search import SearchHit, SearchRanker, SearchResult
from .store import IndexSnapshot, VectorStore

__all__ = [
    "BedrockEmbedder",
    "ChangeKind",
    "ChunkExtractor",
    "ChunkSubtype",
    "Classification",
    "CntxIndexError",
    "CodeChunk",
    "Complexity",
    "ComplexityLevel",
    "CorruptSnapshot",
    "Embedder",
    "EmbeddingPriority",
    "EmbeddingQueue",
    "EmbeddingRecord",
    "EmbeddingUnavailable",
    "FileChangeEvent",
    "FileIndexEntry",
    "FileProvider",
    "FileState",
    "HeuristicClassifier",
    "IndexCoordinator",
    "IndexSnapshot",
    "LanguageDetector",
    "ParseError",
    "QueryEngine",
    "QueryError",
    "RuleTable",
    "RuleTableError",
    "SearchHit",
    "SearchRanker",
    "SearchResult",
    "SentenceTransformerEmbedder",
    "SnapshotPersistence",
    "StaleWriteDiscarded",
    "StaticBundleMembership",
    "VectorStore",
    "WorkspaceFileProvider",
    "assign_chunk_ids",
]
