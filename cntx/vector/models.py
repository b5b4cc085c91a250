"""Core data types of the semantic index."""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

import numpy as np


class ChunkSubtype(str, Enum):
    """Syntactic kind of a chunk."""
    FUNCTION = "function"
    ARROW_FUNCTION = "arrow_function"
    METHOD = "method"
    REACT_COMPONENT = "react_component"
    HOOK = "hook"
    CLASS = "class"
    UNKNOWN = "unknown"


class ComplexityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FileState(str, Enum):
    """Indexing state of a tracked file."""
    UNTRACKED = "untracked"
    INDEXED = "indexed"
    STALE = "stale"
    REINDEXING = "reindexing"
    REMOVED = "removed"


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Complexity:
    score: int
    level: ComplexityLevel

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "level": self.level.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Complexity":
        return cls(score=int(data["score"]), level=ComplexityLevel(data["level"]))


@dataclass(frozen=True)
class CandidateChunk:
    """A chunk boundary found by the extractor, before classification."""
    name: str
    file_path: str
    start_line: int
    end_line: int
    source_text: str
    subtype: ChunkSubtype
    language: str
    is_exported: bool = False
    is_async: bool = False
    includes: Tuple[str, ...] = ()
    low_confidence: bool = False

    def __post_init__(self):
        if self.start_line > self.end_line:
            raise ValueError(
                f"Chunk {self.name} in {self.file_path} ends before it starts "
                f"({self.start_line} > {self.end_line})"
            )

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    @property
    def content_hash(self) -> str:
        return sha256_text(self.source_text)


@dataclass(frozen=True)
class CodeChunk:
    """A classified chunk as held by the index."""
    id: str
    name: str
    file_path: str
    start_line: int
    end_line: int
    source_text: str
    subtype: ChunkSubtype
    language: str
    is_exported: bool
    is_async: bool
    purpose: str
    domain_tags: FrozenSet[str]
    pattern_tags: FrozenSet[str]
    complexity: Complexity
    content_hash: str
    includes: Tuple[str, ...] = ()
    low_confidence: bool = False

    def __post_init__(self):
        if self.start_line > self.end_line:
            raise ValueError(f"Chunk {self.id} ends before it starts")

    @property
    def directory(self) -> str:
        parent = self.file_path.rsplit("/", 1)
        return parent[0] if len(parent) == 2 and parent[0] else "."

    def metadata(self) -> Dict[str, Any]:
        """Caller-facing metadata, without the source text."""
        return {
            "name": self.name,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "subtype": self.subtype.value,
            "language": self.language,
            "is_exported": self.is_exported,
            "is_async": self.is_async,
            "purpose": self.purpose,
            "domain_tags": sorted(self.domain_tags),
            "pattern_tags": sorted(self.pattern_tags),
            "complexity": self.complexity.to_dict(),
            "includes": list(self.includes),
            "low_confidence": self.low_confidence,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.metadata()
        data["id"] = self.id
        data["source_text"] = self.source_text
        data["content_hash"] = self.content_hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeChunk":
        return cls(
            id=data["id"],
            name=data["name"],
            file_path=data["file_path"],
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            source_text=data["source_text"],
            subtype=ChunkSubtype(data["subtype"]),
            language=data.get("language", "text"),
            is_exported=bool(data.get("is_exported", False)),
            is_async=bool(data.get("is_async", False)),
            purpose=data.get("purpose", "unknown"),
            domain_tags=frozenset(data.get("domain_tags", ())),
            pattern_tags=frozenset(data.get("pattern_tags", ())),
            complexity=Complexity.from_dict(data["complexity"]),
            content_hash=data["content_hash"],
            includes=tuple(data.get("includes", ())),
            low_confidence=bool(data.get("low_confidence", False)),
        )


@dataclass(frozen=True, eq=False)
class EmbeddingRecord:
    """The stored vector of one chunk."""
    chunk_id: str
    vector: np.ndarray
    norm_squared: float

    @classmethod
    def create(cls, chunk_id: str, vector) -> "EmbeddingRecord":
        array = np.array(vector, dtype=np.float32).reshape(-1)
        array.setflags(write=False)
        return cls(chunk_id=chunk_id, vector=array, norm_squared=float(np.dot(array, array)))

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class FileIndexEntry:
    file_path: str
    content_hash: str
    chunk_ids: Tuple[str, ...]
    last_indexed_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "content_hash": self.content_hash,
            "chunk_ids": list(self.chunk_ids),
            "last_indexed_at": self.last_indexed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileIndexEntry":
        return cls(
            file_path=data["file_path"],
            content_hash=data["content_hash"],
            chunk_ids=tuple(data["chunk_ids"]),
            last_indexed_at=float(data.get("last_indexed_at", 0.0)),
        )


@dataclass(frozen=True)
class FileChangeEvent:
    """A change reported by the file provider."""
    kind: ChangeKind
    file_path: str
    content: Optional[bytes] = field(default=None, compare=False, repr=False)
