"""Configuration management for the cntx semantic index."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Index settings with environment variable support (``CNTX_*``)."""

    # Workspace configuration
    workspace_root: Path = Field(default=Path("."), description="Root directory of the indexed source tree")
    index_path: Path = Field(default=Path("./.cntx/index"), description="Directory holding the persisted snapshot")
    rules_path: Optional[Path] = Field(
        default=None,
        description="Heuristic rule table (JSON). The bundled default table is used when unset"
    )

    # Embedding configuration
    embedding_backend: str = Field(default="local", description="Embedding backend (local or bedrock)")
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Model name for the local sentence-transformers backend"
    )
    bedrock_region: str = Field(default="us-east-1", description="AWS Bedrock region")
    bedrock_embed_model_id: str = Field(
        default="amazon.titan-embed-text-v2:0",
        description="Bedrock model ID for embeddings"
    )
    max_embed_chars: int = Field(default=8192, description="Embedding input is truncated to this many characters")
    embedding_queue_size: int = Field(default=256, description="Maximum queued embedding requests")

    # Indexing
    debounce_seconds: float = Field(default=0.3, description="Window that coalesces change events per file")
    persist_interval_seconds: float = Field(default=5.0, description="Minimum delay between snapshot writes")
    event_queue_size: int = Field(default=1024, description="Maximum queued file change events")
    min_chunk_chars: int = Field(default=40, description="Candidate chunks shorter than this are skipped")
    max_file_bytes: int = Field(default=200_000, description="Larger files are indexed as a single chunk")

    # Query defaults
    default_search_limit: int = Field(default=10, description="Default number of search results")
    default_min_similarity: float = Field(default=0.2, description="Default similarity cut-off")

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or text)")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    @field_validator("workspace_root", "index_path")
    @classmethod
    def ensure_absolute_paths(cls, v):
        """Ensure paths are absolute."""
        return Path(v).resolve()

    @field_validator("embedding_backend")
    @classmethod
    def validate_embedding_backend(cls, v):
        """Only the local and bedrock backends are supported."""
        backend = v.strip().lower()
        if backend not in ("local", "bedrock"):
            raise ValueError(f"Unsupported embedding backend: {v}")
        return backend

    @field_validator("debounce_seconds", "persist_interval_seconds")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Intervals must not be negative")
        return v

    class Config:
        env_prefix = "CNTX_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()


def validate_startup_config(config: Optional[Settings] = None) -> Settings:
    """Validate configuration at startup and fail fast if invalid."""
    config = config or get_settings()

    if not config.workspace_root.exists():
        raise RuntimeError(f"Workspace root does not exist: {config.workspace_root}")

    if not config.workspace_root.is_dir():
        raise RuntimeError(f"Workspace root is not a directory: {config.workspace_root}")

    if config.rules_path is not None and not Path(config.rules_path).is_file():
        raise RuntimeError(f"Rule table not found: {config.rules_path}")

    config.index_path.mkdir(parents=True, exist_ok=True)

    return config
