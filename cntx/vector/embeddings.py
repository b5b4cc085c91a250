"""Embedding backends and the prioritised embedding queue."""

import asyncio
import itertools
import json
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import IntEnum
from typing import Iterable, Optional, Protocol, runtime_checkable

import boto3
import numpy as np
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cntx.config import Settings
from cntx.observability.logging import get_logger
from cntx.observability.metrics import MetricsCollector, get_metrics_collector
from cntx.vector.exceptions import EmbeddingUnavailable

logger = get_logger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Deterministic ``text -> vector`` function."""

    model_name: str

    @property
    def dimension(self) -> int:
        ...

    def embed(self, text: str) -> np.ndarray:
        ...


def build_embedding_text(
    name: str,
    purpose: str,
    tags: Iterable[str],
    source_text: str,
    max_chars: int = 8192,
) -> str:
    """Text handed to the embedder for one chunk."""
    text = f"{name} {purpose} {' '.join(sorted(tags))} {source_text}"
    return text[:max_chars]


class SentenceTransformerEmbedder:
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", device: Optional[str] = None):
        self.model_name = model_name
        self.device = device
        self._model = None
        self._load_lock = threading.Lock()

    def _load_model(self):
        if self._model is not None:
            return self._model

        with self._load_lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer

                    logger.info("Loading embedding model", model=self.model_name)
                    self._model = SentenceTransformer(self.model_name, device=self.device)
                except Exception as e:
                    logger.error("Failed to load embedding model", model=self.model_name, error=str(e))
                    raise EmbeddingUnavailable(f"Cannot load embedding model {self.model_name}: {e}") from e
        return self._model

    @property
    def dimension(self) -> int:
        return int(self._load_model().get_sentence_embedding_dimension())

    def embed(self, text: str) -> np.ndarray:
        model = self._load_model()
        try:
            vector = model.encode(text, convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False)
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding failed: {e}") from e
        return np.asarray(vector, dtype=np.float32).reshape(-1)


class BedrockEmbedder:
    """Amazon Titan embeddings served by Bedrock."""

    def __init__(
        self,
        model_id: str = "amazon.titan-embed-text-v2:0",
        region: str = "us-east-1",
        max_retries: int = 3,
        timeout: int = 60,
        client=None,
    ):
        self.model_name = model_id
        self.model_id = model_id
        self.region = region
        self._dimension: Optional[int] = None

        if client is not None:
            self.bedrock_runtime = client
            return

        config = Config(
            region_name=region,
            retries={
                'max_attempts': max_retries,
                'mode': 'adaptive'
            },
            read_timeout=timeout,
            connect_timeout=30
        )

        try:
            self.bedrock_runtime = boto3.client('bedrock-runtime', config=config)
            logger.info("Initialized Bedrock embedding client", region=region, model=model_id)
        except (BotoCoreError, ClientError) as e:
            raise EmbeddingUnavailable(f"Failed to initialize Bedrock client: {e}") from e

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = int(self.embed("dimension check").shape[0])
        return self._dimension

    def embed(self, text: str) -> np.ndarray:
        try:
            response = self.bedrock_runtime.invoke_model(
                modelId=self.model_id,
                body=json.dumps({"inputText": text}),
                contentType='application/json',
                accept='application/json'
            )
            response_body = json.loads(response['body'].read())
        except (BotoCoreError, ClientError) as e:
            raise EmbeddingUnavailable(f"Bedrock embedding failed: {e}") from e

        embedding = response_body.get('embedding')
        if not embedding:
            raise EmbeddingUnavailable("Bedrock returned no embedding")

        vector = np.asarray(embedding, dtype=np.float32)
        self._dimension = int(vector.shape[0])
        return vector


def create_embedder(settings: Settings) -> Embedder:
    """Build the embedder selected by ``settings.embedding_backend``."""
    if settings.embedding_backend == "bedrock":
        return BedrockEmbedder(model_id=settings.bedrock_embed_model_id, region=settings.bedrock_region)
    return SentenceTransformerEmbedder(settings.embedding_model)


class EmbeddingPriority(IntEnum):
    QUERY = 0
    INDEXING = 1


class EmbeddingQueue:
    """Serialises embedder calls on one worker thread.

    Requests wait in a bounded priority queue so a query submitted while a
    large indexing pass is running is served before the remaining indexing
    requests.
    """

    def __init__(
        self,
        embedder: Embedder,
        maxsize: int = 256,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.embedder = embedder
        self.maxsize = maxsize
        self.metrics = metrics or get_metrics_collector()
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._worker: Optional[asyncio.Task] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._sequence = itertools.count()

    @property
    def model_name(self) -> str:
        return self.embedder.model_name

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.PriorityQueue(maxsize=self.maxsize)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cntx-embed")
        self._worker = asyncio.create_task(self._run(), name="cntx-embedding-worker")
        logger.debug("Embedding queue started", model=self.model_name)

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._queue is not None:
            while not self._queue.empty():
                _, _, _, future = self._queue.get_nowait()
                if not future.done():
                    future.set_exception(EmbeddingUnavailable("Embedding queue stopped"))
            self._queue = None

        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def embed(self, text: str, priority: EmbeddingPriority = EmbeddingPriority.INDEXING) -> np.ndarray:
        """Embed ``text`` on the worker thread.

        Raises:
            EmbeddingUnavailable: If the embedder cannot serve the request
        """
        if not self.running:
            await self.start()

        future = asyncio.get_running_loop().create_future()
        await self._queue.put((int(priority), next(self._sequence), text, future))
        return await future

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            _, _, text, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    vector = await loop.run_in_executor(self._executor, self.embedder.embed, text)
                except asyncio.CancelledError:
                    if not future.done():
                        future.set_exception(EmbeddingUnavailable("Embedding queue stopped"))
                    raise
                except EmbeddingUnavailable as e:
                    self.metrics.increment_counter("embeddings.failed")
                    if not future.done():
                        future.set_exception(e)
                    continue
                except Exception as e:
                    self.metrics.increment_counter("embeddings.failed")
                    logger.error("Embedder raised unexpectedly", error=str(e), exc_info=True)
                    if not future.done():
                        future.set_exception(EmbeddingUnavailable(f"Embedding failed: {e}"))
                    continue

                self.metrics.increment_counter("embeddings.generated")
                if not future.done():
                    future.set_result(np.asarray(vector, dtype=np.float32).reshape(-1))
            finally:
                self._queue.task_done()
