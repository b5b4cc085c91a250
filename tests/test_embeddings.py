"""Tests for embedding backends and the embedding queue."""

import asyncio
import io
import json
import threading
from unittest.mock import MagicMock

import numpy as np
import pytest
from botocore.exceptions import ClientError

from cntx.config import Settings
from cntx.vector.embeddings import (
    BedrockEmbedder,
    EmbeddingPriority,
    EmbeddingQueue,
    SentenceTransformerEmbedder,
    build_embedding_text,
    create_embedder,
)
from cntx.vector.exceptions import EmbeddingUnavailable


class GatedEmbedder:
    """Blocks on the text "first" until the gate opens."""

    model_name = "gated"
    dimension = 2

    def __init__(self):
        self.gate = threading.Event()
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if text == "first":
            self.gate.wait(timeout=5)
        return np.ones(2, dtype=np.float32)


class BrokenEmbedder:
    model_name = "broken"
    dimension = 2

    def embed(self, text):
        raise RuntimeError("segfault in native code")


class TestEmbeddingText:

    def test_text_layout_and_truncation(self):
        text = build_embedding_text("saveFile", "Data creation", ["public-api", "async-io"], "x" * 100, max_chars=60)

        assert len(text) == 60
        assert text.startswith("saveFile Data creation async-io public-api x")


class TestEmbeddingQueue:
    """Test the prioritised embedding queue."""

    @pytest.mark.asyncio
    async def test_query_requests_jump_the_queue(self):
        embedder = GatedEmbedder()
        queue = EmbeddingQueue(embedder, maxsize=16)
        await queue.start()
        try:
            first = asyncio.create_task(queue.embed("first", EmbeddingPriority.INDEXING))
            while not embedder.calls:
                await asyncio.sleep(0.01)

            later = [
                asyncio.create_task(queue.embed("a", EmbeddingPriority.INDEXING)),
                asyncio.create_task(queue.embed("b", EmbeddingPriority.INDEXING)),
                asyncio.create_task(queue.embed("q", EmbeddingPriority.QUERY)),
            ]
            await asyncio.sleep(0.05)
            embedder.gate.set()
            await asyncio.gather(first, *later)

            assert embedder.calls == ["first", "q", "a", "b"]
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_results_and_counters(self, embedder, metrics):
        queue = EmbeddingQueue(embedder, metrics=metrics)
        try:
            vector = await queue.embed("load user settings")

            assert vector.dtype == np.float32
            assert vector.shape == (embedder.dimension,)
            assert queue.running
            assert metrics.get_counter("embeddings.generated") == 1
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_unavailable_embedder(self, embedder, metrics):
        embedder.fail = True
        queue = EmbeddingQueue(embedder, metrics=metrics)
        try:
            with pytest.raises(EmbeddingUnavailable):
                await queue.embed("anything")

            assert metrics.get_counter("embeddings.failed") == 1
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_wrapped(self, metrics):
        queue = EmbeddingQueue(BrokenEmbedder(), metrics=metrics)
        try:
            with pytest.raises(EmbeddingUnavailable, match="segfault"):
                await queue.embed("anything")

            # The worker survives and keeps serving
            assert queue.running
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, embedder):
        queue = EmbeddingQueue(embedder)
        await queue.start()
        await queue.stop()
        await queue.stop()

        assert not queue.running


class TestBedrockEmbedder:
    """Test the Bedrock backend with a stubbed client."""

    def make_client(self, payload):
        client = MagicMock()
        client.invoke_model.return_value = {"body": io.BytesIO(json.dumps(payload).encode("utf-8"))}
        return client

    def test_embed(self):
        client = self.make_client({"embedding": [0.1, 0.2, 0.3]})
        embedder = BedrockEmbedder(model_id="amazon.titan-embed-text-v2:0", client=client)

        vector = embedder.embed("parse config file")

        assert vector.dtype == np.float32
        np.testing.assert_allclose(vector, [0.1, 0.2, 0.3], rtol=1e-6)
        assert embedder.dimension == 3
        kwargs = client.invoke_model.call_args.kwargs
        assert kwargs["modelId"] == "amazon.titan-embed-text-v2:0"
        assert json.loads(kwargs["body"]) == {"inputText": "parse config file"}

    def test_client_error(self):
        client = MagicMock()
        client.invoke_model.side_effect = ClientError(
            {"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}},
            "InvokeModel",
        )
        embedder = BedrockEmbedder(client=client)

        with pytest.raises(EmbeddingUnavailable):
            embedder.embed("text")

    def test_missing_embedding(self):
        embedder = BedrockEmbedder(client=self.make_client({"inputTextTokenCount": 3}))

        with pytest.raises(EmbeddingUnavailable):
            embedder.embed("text")


class TestCreateEmbedder:

    def test_local_backend_loads_lazily(self, tmp_path):
        settings = Settings(workspace_root=tmp_path, embedding_model="sentence-transformers/all-MiniLM-L6-v2")

        embedder = create_embedder(settings)

        assert isinstance(embedder, SentenceTransformerEmbedder)
        assert embedder.model_name == "sentence-transformers/all-MiniLM-L6-v2"
        assert embedder._model is None
