"""Tests for the query engine through the index service."""

import numpy as np
import pytest

from cntx.service import IndexService
from cntx.vector.exceptions import QueryError
from cntx.vector.models import ChangeKind, FileChangeEvent
from cntx.vector.projection import pca_2d
from cntx.vector.provider import StaticBundleMembership
from cntx.vector.query import weighted_jaccard

from conftest import InMemoryFileProvider


def make_service(settings, embedder, provider, metrics, bundle_membership=None):
    return IndexService(
        settings,
        embedder=embedder,
        provider=provider,
        bundle_membership=bundle_membership,
        metrics=metrics,
        persist=False,
    )


class TestSemanticSearch:
    """Test similarity search."""

    @pytest.mark.asyncio
    async def test_login_form_scenario(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            hits = await service.search("user authentication login", limit=5, min_similarity=0.2)

            assert "src/auth/Login.tsx:LoginForm:0" in [h.chunk_id for h in hits]
            assert all(h.similarity >= 0.2 for h in hits)
            assert [h.similarity for h in hits] == sorted((h.similarity for h in hits), reverse=True)

            login = next(h for h in hits if h.chunk.name == "LoginForm")
            metadata = login.to_dict()["metadata"]
            assert metadata["subtype"] == "react_component"
            assert metadata["purpose"] == "React component"
            assert "authentication" in metadata["domain_tags"]
            assert metadata["start_line"] == 1
            assert metadata["end_line"] == 3
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_search_uses_setting_defaults(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            hits = await service.search("login form")

            assert hits[0].chunk.name == "LoginForm"
            assert len(hits) <= settings.default_search_limit
            assert metrics.get_timer_summary("query.search_duration").count == 1
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_search_with_snippets(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            results = await service.query_engine.search_with_snippets("login form", limit=3, min_similarity=0.2)

            assert results[0].file_path == "src/auth/Login.tsx"
            assert results[0].location == "src/auth/Login.tsx:1-3"
            assert "**login**" in results[0].highlighted_snippet
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_embedding_failure_raises_query_error(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            embedder.fail = True

            with pytest.raises(QueryError):
                await service.search("anything at all")
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_empty_index_returns_nothing(self, settings, embedder, metrics):
        service = make_service(settings, embedder, InMemoryFileProvider(), metrics)
        await service.start()
        try:
            assert await service.search("login") == []
            assert service.get_status()["chunk_count"] == 0
        finally:
            await service.stop()


class TestMetadataQueries:
    """Test type, domain and file lookups."""

    @pytest.mark.asyncio
    async def test_search_by_type_and_domain(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            assert [c.name for c in service.search_by_type("react_component")] == ["LoginForm"]
            assert [c.name for c in service.search_by_type("function")] == [
                "add_numbers",
                "multiply_numbers",
                "fetchUserProfile",
                "formatUserName",
            ]
            assert [c.name for c in service.search_by_domain("authentication")] == [
                "LoginForm",
                "fetchUserProfile",
                "formatUserName",
            ]
            assert service.search_by_domain("no-such-domain") == []
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_unknown_subtype(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            with pytest.raises(QueryError):
                service.search_by_type("macro")
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_get_file_chunks(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            chunks = service.query_engine.get_file_chunks("src/services/user.ts")

            assert [c.name for c in chunks] == ["fetchUserProfile", "formatUserName"]
            assert service.query_engine.get_file_chunks("missing.ts") == []
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_status(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            status = service.get_status()

            assert status == {
                "chunk_count": 5,
                "embedding_count": 5,
                "pending_count": 0,
                "file_count": 3,
                "model_name": "test-hashing-embedder",
                "cached": False,
                "version": service.store.current.version,
            }
        finally:
            await service.stop()


class TestProjection:
    """Test 2D projections and the similarity network."""

    @pytest.mark.asyncio
    async def test_projection_points(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            points = service.get_projection()

            assert len(points) == 5
            login = next(p for p in points if p["name"] == "LoginForm")
            assert set(login) == {
                "id", "x", "y", "name", "file_path", "purpose", "subtype", "complexity", "directory",
            }
            assert login["directory"] == "src/auth"
            assert login["complexity"] == "low"
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_projection_cached_per_version(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            first = service.get_projection()
            assert service.get_projection() is first

            del provider.files["lib/math.py"]
            await service.notify(FileChangeEvent(ChangeKind.DELETED, "lib/math.py"))
            await service.wait_idle()

            second = service.get_projection()
            assert second is not first
            assert len(second) == 3
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_similarity_network(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            network = service.query_engine.get_similarity_network(threshold=-1.0)

            assert len(network["nodes"]) == 5
            assert len(network["edges"]) == 10
            similarities = [e["similarity"] for e in network["edges"]]
            assert similarities == sorted(similarities, reverse=True)
            assert all(e["source"] < e["target"] for e in network["edges"])

            limited = service.query_engine.get_similarity_network(limit=2, threshold=1.01)
            assert len(limited["nodes"]) == 2
            assert limited["edges"] == []
        finally:
            await service.stop()


class TestBundleSuggestions:
    """Test bundle suggestions from tag overlap."""

    def test_weighted_jaccard(self):
        assert weighted_jaccard({}, {}) == 0.0
        assert weighted_jaccard({"a": 1.0}, {"a": 1.0}) == 1.0
        assert weighted_jaccard({"a": 0.5, "b": 0.5}, {"a": 1.0}) == pytest.approx(0.5 / 1.5)

    @pytest.mark.asyncio
    async def test_ranked_by_tag_overlap(self, settings, embedder, provider, metrics):
        membership = StaticBundleMembership({
            "frontend-auth": ["src/auth/Login.tsx"],
            "utilities": ["lib/math.py"],
        })
        service = make_service(settings, embedder, provider, metrics, bundle_membership=membership)
        await service.start()
        try:
            assert service.suggest_bundles_for_file("src/services/user.ts") == ["frontend-auth", "utilities"]
            # Bundles already holding the file are left out
            assert service.suggest_bundles_for_file("src/auth/Login.tsx") == ["utilities"]
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_falls_back_to_path_rules(self, settings, embedder, provider, metrics):
        service = make_service(settings, embedder, provider, metrics)
        await service.start()
        try:
            assert service.suggest_bundles_for_file("src/auth/Login.tsx") == ["frontend"]
            assert service.suggest_bundles_for_file("lib/math.py") == []
        finally:
            await service.stop()


class TestPca:

    def test_collinear_points_have_zero_second_axis(self):
        matrix = np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 0.0], [2.0, 2.0, 0.0]], dtype=np.float32)

        coords = pca_2d(matrix)

        assert coords.shape == (3, 2)
        np.testing.assert_allclose(coords[:, 1], 0.0, atol=1e-9)
        assert coords[0, 0] == pytest.approx(-coords[2, 0])
        # Sign is fixed so the largest coordinate is positive
        assert coords[np.argmax(np.abs(coords[:, 0])), 0] > 0

    def test_single_row(self):
        assert pca_2d(np.ones((1, 4))).tolist() == [[0.0, 0.0]]
