"""Tests for configuration loading and startup validation."""

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from cntx.config import Settings, validate_startup_config
from cntx.service import IndexService


class TestSettings:
    """Test settings defaults and environment overrides."""

    def test_defaults(self, tmp_path):
        settings = Settings(workspace_root=tmp_path)

        assert settings.embedding_backend == "local"
        assert settings.debounce_seconds == 0.3
        assert settings.persist_interval_seconds == 5.0
        assert settings.max_embed_chars == 8192
        assert settings.default_search_limit == 10
        assert settings.default_min_similarity == 0.2
        assert settings.rules_path is None
        assert settings.workspace_root.is_absolute()
        assert settings.index_path.is_absolute()

    def test_environment_prefix(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CNTX_WORKSPACE_ROOT", str(tmp_path))
        monkeypatch.setenv("CNTX_DEBOUNCE_SECONDS", "1.5")
        monkeypatch.setenv("CNTX_EMBEDDING_BACKEND", "Bedrock")

        settings = Settings()

        assert settings.workspace_root == tmp_path.resolve()
        assert settings.debounce_seconds == 1.5
        assert settings.embedding_backend == "bedrock"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(embedding_backend="openai")

    def test_negative_interval_rejected(self):
        with pytest.raises(ValidationError):
            Settings(persist_interval_seconds=-1)


class TestStartupValidation:
    """Test fail-fast checks at startup."""

    def test_valid_configuration_creates_index_dir(self, tmp_path):
        settings = Settings(workspace_root=tmp_path, index_path=tmp_path / ".cntx" / "index")

        validate_startup_config(settings)

        assert (tmp_path / ".cntx" / "index").is_dir()

    def test_missing_workspace(self, tmp_path):
        settings = Settings(workspace_root=tmp_path / "missing", index_path=tmp_path / "index")

        with pytest.raises(RuntimeError, match="does not exist"):
            validate_startup_config(settings)

    def test_workspace_is_a_file(self, tmp_path):
        target = tmp_path / "file.txt"
        target.write_text("x", encoding="utf-8")
        settings = Settings(workspace_root=target, index_path=tmp_path / "index")

        with pytest.raises(RuntimeError, match="not a directory"):
            validate_startup_config(settings)

    def test_missing_rules_file(self, tmp_path):
        settings = Settings(
            workspace_root=tmp_path,
            index_path=tmp_path / "index",
            rules_path=Path(tmp_path / "rules.json"),
        )

        with pytest.raises(RuntimeError, match="Rule table not found"):
            validate_startup_config(settings)


class TestServiceFromSettings:
    """Test building a service from validated settings."""

    def test_from_settings_applies_log_settings(self, tmp_path, embedder, metrics):
        log_file = tmp_path / "logs" / "cntx.log"
        settings = Settings(
            workspace_root=tmp_path,
            index_path=tmp_path / "index",
            log_level="WARNING",
            log_file=str(log_file),
        )

        try:
            service = IndexService.from_settings(settings, embedder=embedder, metrics=metrics, persist=False)

            assert service.settings is settings
            assert logging.getLogger().level == logging.WARNING
            assert log_file.parent.is_dir()
            assert (tmp_path / "index").is_dir()
        finally:
            logging.getLogger().handlers.clear()

    def test_from_settings_rejects_missing_workspace(self, tmp_path, embedder):
        settings = Settings(workspace_root=tmp_path / "missing", index_path=tmp_path / "index")

        with pytest.raises(RuntimeError):
            IndexService.from_settings(settings, embedder=embedder)
