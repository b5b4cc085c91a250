"""Similarity scoring and result post-processing for vector search."""

import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from cntx.vector.models import CodeChunk

_WORD = re.compile(r"\w+")


@dataclass(frozen=True)
class SearchHit:
    """One ranked match from a similarity search."""
    chunk_id: str
    similarity: float
    chunk: CodeChunk

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.chunk.metadata()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.chunk_id,
            "similarity": self.similarity,
            "metadata": self.metadata,
        }


def cosine_scores(matrix: np.ndarray, norms: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Rows with a zero norm score -1 so they never pass a similarity cut-off.
    """
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0 or matrix.shape[0] == 0:
        return np.full(matrix.shape[0], -1.0, dtype=np.float32)

    dots = matrix @ query
    denominators = norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denominators > 0, dots / denominators, -1.0)
    return np.clip(scores, -1.0, 1.0)


def rank_key(hit: SearchHit) -> Tuple[float, str, str, str]:
    """Similarity descending, then file path, name and id for stable ties."""
    return (-hit.similarity, hit.chunk.file_path, hit.chunk.name, hit.chunk_id)


def select_top_k(hits: Sequence[SearchHit], k: int, min_similarity: float) -> List[SearchHit]:
    kept = [hit for hit in hits if hit.similarity >= min_similarity]
    kept.sort(key=rank_key)
    return kept[:max(0, k)]


def query_terms(query: str) -> List[str]:
    """Distinct lowercase words of ``query``, longest first."""
    return sorted(set(_WORD.findall(query.lower())), key=lambda term: (-len(term), term))


@dataclass
class SearchResult:
    """A search hit prepared for display: location, snippet and highlights."""
    hit: SearchHit
    snippet: Optional[str] = None
    highlighted_snippet: Optional[str] = None

    @property
    def chunk_id(self) -> str:
        return self.hit.chunk_id

    @property
    def chunk(self) -> CodeChunk:
        return self.hit.chunk

    @property
    def score(self) -> float:
        return self.hit.similarity

    @property
    def file_path(self) -> str:
        return self.hit.chunk.file_path

    @property
    def start_line(self) -> int:
        return self.hit.chunk.start_line

    @property
    def end_line(self) -> int:
        return self.hit.chunk.end_line

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.start_line}-{self.end_line}"

    def to_dict(self) -> Dict[str, Any]:
        data = self.hit.to_dict()
        data.update(
            file_path=self.file_path,
            location=self.location,
            content=self.chunk.source_text,
            snippet=self.snippet,
            highlighted_snippet=self.highlighted_snippet,
        )
        return data


class SearchRanker:
    """Add snippets and highlights to search results.

    Unlike a re-ranker this never changes the order or scores produced by
    the similarity search.
    """

    def __init__(self, snippet_length: int = 200, marker: str = "**"):
        """Initialize search ranker.

        Args:
            snippet_length: Maximum snippet length before ellipses are added
            marker: String placed on both sides of highlighted terms
        """
        self.snippet_length = snippet_length
        self.marker = marker

    def decorate(self, hits: Sequence[SearchHit], query: str) -> List[SearchResult]:
        """One result per hit, in the same order."""
        results = []
        for hit in hits:
            snippet = self._extract_snippet(hit.chunk.source_text, query)
            results.append(SearchResult(
                hit=hit,
                snippet=snippet,
                highlighted_snippet=self._highlight_snippet(snippet, query),
            ))
        return results

    def _anchor(self, content: str, query: str) -> int:
        lowered = content.lower()
        phrase = query.strip().lower()
        if phrase:
            position = lowered.find(phrase)
            if position != -1:
                return position
        for term in query_terms(query):
            match = re.search(rf"\b{re.escape(term)}", lowered)
            if match:
                return match.start()
        return 0

    def _extract_snippet(self, content: str, query: str) -> str:
        """Window of ``snippet_length`` characters around the first query match."""
        if len(content) <= self.snippet_length:
            return content

        anchor = self._anchor(content, query)
        start = max(0, min(anchor - self.snippet_length // 4, len(content) - self.snippet_length))
        end = start + self.snippet_length

        # Snap both ends outward to whitespace so words are not cut
        while start > 0 and not content[start - 1].isspace():
            start -= 1
        while end < len(content) and not content[end].isspace():
            end += 1

        snippet = content[start:end].strip()
        if start > 0:
            snippet = "..." + snippet
        if end < len(content):
            snippet += "..."
        return snippet

    def _highlight_snippet(self, snippet: str, query: str) -> str:
        terms = query_terms(query)
        if not snippet or not terms:
            return snippet

        pattern = re.compile(r"\b(?:" + "|".join(map(re.escape, terms)) + r")\b", re.IGNORECASE)
        return pattern.sub(lambda m: f"{self.marker}{m.group(0)}{self.marker}", snippet)

    def group_results_by_file(self, results: Sequence[SearchResult]) -> Dict[str, List[SearchResult]]:
        """Group results by file.

        Files keep the order of their best result; within a file results
        are sorted by line.
        """
        grouped: Dict[str, List[SearchResult]] = {}
        for result in results:
            grouped.setdefault(result.file_path, []).append(result)
        return {
            path: sorted(file_results, key=lambda r: (r.start_line, r.chunk_id))
            for path, file_results in grouped.items()
        }

    def get_search_stats(self, results: Sequence[SearchResult]) -> Dict[str, Any]:
        scores = [r.score for r in results]
        return {
            "total_results": len(results),
            "files_matched": len({r.file_path for r in results}),
            "languages": dict(Counter(r.chunk.language for r in results)),
            "subtypes": dict(Counter(r.chunk.subtype.value for r in results)),
            "average_score": sum(scores) / len(scores) if scores else 0.0,
            "score_range": {"min": min(scores), "max": max(scores)} if scores else None,
        }
