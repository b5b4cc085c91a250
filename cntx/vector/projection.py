"""2D projection of chunk embeddings for visualisation."""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from cntx.vector.store import IndexSnapshot


def pca_2d(matrix: np.ndarray) -> np.ndarray:
    """Project rows of ``matrix`` onto their first two principal components.

    Fewer than two rows, or data with a single direction of variance, yield
    zeros in the missing coordinates.
    """
    n = matrix.shape[0]
    coords = np.zeros((n, 2), dtype=np.float64)
    if n < 2:
        return coords

    centered = matrix.astype(np.float64) - matrix.mean(axis=0, dtype=np.float64)
    _, singular_values, vt = np.linalg.svd(centered, full_matrices=False)

    components = min(2, vt.shape[0])
    projected = centered @ vt[:components].T
    for axis in range(components):
        if singular_values[axis] <= 1e-12:
            continue
        column = projected[:, axis]
        # Fix the sign so repeated runs give the same picture
        if column[np.argmax(np.abs(column))] < 0:
            column = -column
        coords[:, axis] = column
    return coords


class ProjectionCache:
    """Projection of the latest snapshot, recomputed when the version changes."""

    def __init__(self):
        self._cached: Optional[Tuple[int, List[Dict[str, Any]]]] = None

    def get(self, snapshot: IndexSnapshot) -> List[Dict[str, Any]]:
        if self._cached is not None and self._cached[0] == snapshot.version:
            return self._cached[1]

        points = self.compute(snapshot)
        self._cached = (snapshot.version, points)
        return points

    def compute(self, snapshot: IndexSnapshot) -> List[Dict[str, Any]]:
        ids, matrix = snapshot.embedding_matrix()
        if not ids:
            return []

        coords = pca_2d(matrix)
        points = []
        for chunk_id, (x, y) in zip(ids, coords):
            chunk = snapshot.chunks[chunk_id]
            points.append({
                "id": chunk_id,
                "x": float(x),
                "y": float(y),
                "name": chunk.name,
                "file_path": chunk.file_path,
                "purpose": chunk.purpose,
                "subtype": chunk.subtype.value,
                "complexity": chunk.complexity.level.value,
                "directory": chunk.directory,
            })
        return points
