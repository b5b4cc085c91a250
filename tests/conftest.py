"""Shared fixtures: a deterministic embedder and an in-memory file tree."""

import hashlib
import re
import threading
import time
from typing import Dict, List, Optional

import numpy as np
import pytest

from cntx.config import Settings
from cntx.observability.metrics import MetricsCollector
from cntx.vector.exceptions import EmbeddingUnavailable


def tokenize(text: str) -> List[str]:
    """Split camelCase, then lowercase word tokens."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", text)
    return [token.lower() for token in re.findall(r"[A-Za-z0-9]+", spaced)]


class HashingEmbedder:
    """Bag-of-words embedder: one bucket per token, chosen by md5."""

    def __init__(self, dimension: int = 256, model_name: str = "test-hashing-embedder", delay: float = 0.0):
        self.model_name = model_name
        self._dimension = dimension
        self.delay = delay
        self.fail = False
        self.calls: List[str] = []
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.calls.append(text)
        if self.fail:
            raise EmbeddingUnavailable("model offline")
        if self.delay:
            time.sleep(self.delay)

        vector = np.zeros(self._dimension, dtype=np.float32)
        for token in set(tokenize(text)):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self._dimension
            vector[bucket] = 1.0
        return vector


class InMemoryFileProvider:
    """File provider backed by a dict of path -> text."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})
        self.reads: List[str] = []

    def list_files(self) -> List[str]:
        return sorted(self.files)

    def read(self, path: str) -> bytes:
        self.reads.append(path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path].encode("utf-8")


LOGIN_FORM_TSX = '''export function LoginForm() {
  return <form className="login">...</form>;
}
'''

USER_SERVICE_TS = '''import { api } from "./api";

// Loads the current user profile from the backend.
export async function fetchUserProfile(userId: string) {
  const response = await api.get(`/users/${userId}`);
  return response.data;
}

export function formatUserName(first: string, last: string): string {
  return `${first} ${last}`.trim();
}
'''

MATH_PY = '''def add_numbers(left, right):
    """Add two numbers."""
    return left + right


def multiply_numbers(left, right):
    """Multiply two numbers."""
    return left * right
'''


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def sample_files():
    return {
        "src/auth/Login.tsx": LOGIN_FORM_TSX,
        "src/services/user.ts": USER_SERVICE_TS,
        "lib/math.py": MATH_PY,
    }


@pytest.fixture
def provider(sample_files):
    return InMemoryFileProvider(sample_files)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        workspace_root=tmp_path,
        index_path=tmp_path / "index",
        debounce_seconds=0.05,
        persist_interval_seconds=60.0,
    )
