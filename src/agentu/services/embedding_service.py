"""
Embedding service.

Turns text into vectors through a pluggable backend:
- OpenAIEmbeddingBackend: any OpenAI-compatible ``/v1/embeddings`` endpoint over httpx
- HashingEmbeddingBackend: deterministic feature hashing with numpy, no network

Backend failures of any kind surface as EmbeddingFailureError; an empty or
wrongly sized vector is a failure, never an empty result.
"""

import hashlib
import re
from typing import Protocol

import httpx
import numpy as np

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import EmbeddingFailureError
from ..core.http_client import get_http_client
from ..core.logging import get_logger

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbeddingBackend(Protocol):
    """Computes one vector per input text."""

    async def embed(self, texts: list[str], model: str, dimension: int) -> list[list[float]]: ...


class OpenAIEmbeddingBackend:
    """OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def embed(self, texts: list[str], model: str, dimension: int) -> list[list[float]]:
        client = self._client or await get_http_client()
        payload: dict = {"model": model, "input": texts}
        # Only the text-embedding-3 family accepts a requested dimension
        if model.startswith("text-embedding-3"):
            payload["dimensions"] = dimension
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            response = await client.post(
                f"{self.base_url}/v1/embeddings", json=payload, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()["data"]
        except httpx.HTTPStatusError as e:
            raise EmbeddingFailureError(
                f"embedding endpoint returned HTTP {e.response.status_code}",
                {"status": e.response.status_code, "model": model},
            ) from e
        except httpx.HTTPError as e:
            raise EmbeddingFailureError(f"embedding request failed: {e}", {"model": model}) from e
        except (KeyError, TypeError, ValueError) as e:
            raise EmbeddingFailureError("malformed embedding response", {"model": model}) from e

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [list(map(float, item["embedding"])) for item in ordered]


class HashingEmbeddingBackend:
    """Bag-of-words feature hashing into a fixed-size, L2-normalised vector.

    Identical text always maps to the identical vector, and texts sharing
    words land close together, which is enough for offline development and
    tests. The model name is ignored.
    """

    async def embed(self, texts: list[str], model: str, dimension: int) -> list[list[float]]:
        return [self._embed_one(text, dimension) for text in texts]

    @staticmethod
    def _embed_one(text: str, dimension: int) -> list[float]:
        vector = np.zeros(dimension, dtype=np.float64)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()


def build_embedding_backend(settings: Settings) -> EmbeddingBackend:
    if settings.embedding_backend == "hashing":
        return HashingEmbeddingBackend()
    return OpenAIEmbeddingBackend(
        base_url=settings.embedding_api_base_url,
        api_key=settings.embedding_api_key,
        timeout=settings.embedding_timeout,
    )


class EmbeddingService:
    """Batched embedding with result validation."""

    def __init__(self, backend: EmbeddingBackend | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings_instance()
        self.backend = backend or build_embedding_backend(self.settings)
        self.batch_size = max(1, self.settings.embedding_batch_size)

    async def embed_texts(self, texts: list[str], model: str, dimension: int) -> list[list[float]]:
        """Embed ``texts`` in batches, preserving order.

        Raises:
            EmbeddingFailureError: If the backend fails or returns vectors of
                the wrong count or dimension.
        """
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            try:
                result = await self.backend.embed(batch, model, dimension)
            except EmbeddingFailureError:
                raise
            except Exception as e:
                logger.error("Embedding backend failed", extra={"model": model, "error": str(e)})
                raise EmbeddingFailureError(str(e), {"model": model}) from e

            if len(result) != len(batch):
                raise EmbeddingFailureError(
                    f"expected {len(batch)} vectors, got {len(result)}", {"model": model}
                )
            for vector in result:
                if len(vector) != dimension:
                    raise EmbeddingFailureError(
                        f"vector dimension {len(vector)} does not match {dimension}",
                        {"model": model, "expected": dimension, "actual": len(vector)},
                    )
            vectors.extend(result)

        logger.debug("Embedded texts", extra={"count": len(texts), "model": model})
        return vectors

    async def embed_query(self, text: str, model: str, dimension: int) -> list[float]:
        """Embed a single query string."""
        if not text or not text.strip():
            raise EmbeddingFailureError("query text is empty", {"model": model})
        return (await self.embed_texts([text], model, dimension))[0]


_embedding_service: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService:
    global _embedding_service  # noqa: PLW0603
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
