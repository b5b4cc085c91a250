"""File and bundle-membership providers consumed by the indexer."""

import os
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Protocol, Union, runtime_checkable

from cntx.observability.logging import get_logger

logger = get_logger(__name__)

# Maps a workspace-relative file path to the bundles that contain it
BundleMembershipProvider = Callable[[str], List[str]]


@runtime_checkable
class FileProvider(Protocol):
    """Source of file contents, addressed by workspace-relative POSIX paths."""

    def list_files(self) -> Iterable[str]:
        ...

    def read(self, path: str) -> bytes:
        """Raises FileNotFoundError when the file no longer exists."""
        ...


class WorkspaceFileProvider:
    """Reads files from a local directory tree."""

    ALLOWED_HIDDEN = {'.gitignore', '.gitattributes', '.dockerignore'}

    SKIP_DIRS = {
        'node_modules', '__pycache__', '.git', '.svn', '.hg',
        'build', 'dist', 'target', 'bin', 'obj', '.vscode',
        '.idea', '.pytest_cache', '.mypy_cache', '.tox',
        'venv', 'env', '.env', 'virtualenv', '.cntx'
    }

    BINARY_EXTENSIONS = {
        '.exe', '.dll', '.so', '.dylib', '.a', '.lib',
        '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.ico',
        '.mp3', '.mp4', '.avi', '.mov', '.wav', '.pdf',
        '.zip', '.tar', '.gz', '.rar', '.7z', '.bin',
        '.pyc', '.pyo', '.class', '.jar', '.war', '.npy', '.npz'
    }

    def __init__(self, root: Union[str, Path], max_file_bytes: int = 1024 * 1024):
        self.root = Path(root).resolve()
        self.max_file_bytes = max_file_bytes

    def should_index_file(self, relative_path: Path) -> bool:
        """Determine if a file should be indexed.

        Args:
            relative_path: Path relative to the workspace root

        Returns:
            True if file should be indexed
        """
        # Skip hidden files and directories
        if any(part.startswith('.') for part in relative_path.parts):
            if relative_path.name not in self.ALLOWED_HIDDEN:
                return False

        if any(part in self.SKIP_DIRS for part in relative_path.parts[:-1]):
            return False

        if relative_path.suffix.lower() in self.BINARY_EXTENSIONS:
            return False

        try:
            if (self.root / relative_path).stat().st_size > self.max_file_bytes:
                return False
        except OSError:
            return False

        return True

    def list_files(self) -> List[str]:
        files = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            # Prune in place so os.walk skips these subtrees
            dirnames[:] = sorted(
                d for d in dirnames if d not in self.SKIP_DIRS and not d.startswith('.')
            )
            for filename in sorted(filenames):
                relative = (Path(dirpath) / filename).relative_to(self.root)
                if self.should_index_file(relative):
                    files.append(relative.as_posix())
        return sorted(files)

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValueError(f"Path escapes workspace root: {path}")
        return candidate

    def read(self, path: str) -> bytes:
        candidate = self._resolve(path)
        if not candidate.is_file():
            raise FileNotFoundError(path)
        return candidate.read_bytes()


class StaticBundleMembership:
    """Bundle membership from a fixed ``bundle -> files`` mapping."""

    def __init__(self, bundles: Mapping[str, Iterable[str]]):
        self._by_file: Dict[str, List[str]] = {}
        for bundle in sorted(bundles):
            for file_path in bundles[bundle]:
                self._by_file.setdefault(file_path, []).append(bundle)

    def __call__(self, file_path: str) -> List[str]:
        return list(self._by_file.get(file_path, []))
