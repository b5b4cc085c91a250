"""Exceptions for indexing and search operations."""


class CntxIndexError(Exception):
    """Base exception for index operations."""
    pass


class ParseError(CntxIndexError):
    """A file could not be parsed; the extractor falls back to a whole-file chunk."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(f"Failed to parse {file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


class RuleTableError(CntxIndexError):
    """The heuristic rule table is malformed or uses undeclared tags."""
    pass


class EmbeddingUnavailable(CntxIndexError):
    """The embedding model is not loaded or could not serve a request."""
    pass


class CorruptSnapshot(CntxIndexError):
    """A persisted snapshot could not be read back."""
    pass


class StaleWriteDiscarded(CntxIndexError):
    """A reindexing pass was superseded by a newer change to the same file."""

    def __init__(self, file_path: str):
        super().__init__(f"Discarded superseded reindexing pass for {file_path}")
        self.file_path = file_path


class QueryError(CntxIndexError):
    """A query could not be served."""
    pass
