"""
Embedding module for Vaultlink.

Converts text into vectors through a hosted OpenAI endpoint or any
OpenAI-compatible server (text-embeddings-inference, sentence-transformers
servers, Ollama, ...).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
from openai import AsyncOpenAI

from config import VaultlinkConfig
from errors import ConfigurationError, EmbeddingError, OfflineError, is_network_error
from models import EmbeddingVector

# The hosted API accepts up to 2048 inputs per request.
OPENAI_MAX_BATCH = 2048

_KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingProvider(ABC):
    """Capability set shared by every embedding backend."""

    async def embed(self, text: str) -> EmbeddingVector:
        vectors = await self.embed_batch([text])
        return vectors[0]

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        """Embed ``texts``; the result has the same length and order."""

    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    def dimensions(self) -> Optional[int]:
        """Vector size, or None while it is still unknown."""

    async def aclose(self) -> None:
        return None


def _ordered_vectors(items: Sequence[Any], expected: int) -> List[EmbeddingVector]:
    """Turn response items into vectors ordered by their ``index`` field."""
    rows = []
    for position, item in enumerate(items):
        if isinstance(item, dict):
            index, values = item.get("index", position), item["embedding"]
        else:
            index, values = getattr(item, "index", position), item.embedding
        rows.append((index, values))
    rows.sort(key=lambda row: row[0])

    if len(rows) != expected:
        raise EmbeddingError(f"Expected {expected} embeddings, got {len(rows)}")
    return [EmbeddingVector(values=list(values)) for _, values in rows]


class OpenAIEmbedder(EmbeddingProvider):
    """Hosted OpenAI embeddings (bring your own key)."""

    def __init__(self, config: VaultlinkConfig, client: Optional[AsyncOpenAI] = None):
        self.model = config.embedding_model
        self._dimensions: Optional[int] = _KNOWN_DIMENSIONS.get(self.model)

        api_key = (config.openai_api_key or "").strip()
        if not api_key and client is None:
            raise ConfigurationError(
                "OpenAI API key not configured. Set VAULTLINK_OPENAI_API_KEY "
                "(or OPENAI_API_KEY), or set VAULTLINK_CUSTOM_EMBEDDING_URL to use "
                "a self-hosted embedding server."
            )

        if client is None:
            kwargs: Dict[str, Any] = {"api_key": api_key}
            if config.request_timeout is not None:
                kwargs["timeout"] = config.request_timeout
            client = AsyncOpenAI(**kwargs)
        self.client = client

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        if not texts:
            return []

        vectors: List[EmbeddingVector] = []
        for offset in range(0, len(texts), OPENAI_MAX_BATCH):
            batch = list(texts[offset : offset + OPENAI_MAX_BATCH])
            try:
                response = await self.client.embeddings.create(
                    model=self.model,
                    input=batch,
                    encoding_format="float",
                )
            except Exception as exc:
                if is_network_error(exc):
                    print("OpenAIEmbedder: embedding skipped, offline detected")
                    raise OfflineError("Offline: skipped embedding generation") from exc
                print(f"OpenAIEmbedder: embedding error: {exc}")
                raise EmbeddingError(f"Failed to generate embeddings: {exc}") from exc

            vectors.extend(_ordered_vectors(response.data, len(batch)))

        if vectors:
            self._dimensions = vectors[0].dimensions
        return vectors

    def model_name(self) -> str:
        return self.model

    def dimensions(self) -> Optional[int]:
        return self._dimensions

    async def aclose(self) -> None:
        await self.client.close()


class CompatibleEmbedder(EmbeddingProvider):
    """Self-hosted server speaking the OpenAI ``/embeddings`` request shape.

    The Authorization header is only sent when a key is configured, and the
    vector size is learned from the first response.
    """

    def __init__(self, config: VaultlinkConfig, client: Optional[httpx.AsyncClient] = None):
        explicit_url = (config.custom_embedding_url or "").strip()
        api_base = (config.custom_api_base or "").strip()
        if explicit_url:
            self.url = explicit_url
        elif api_base:
            self.url = api_base.rstrip("/") + "/embeddings"
        else:
            raise ConfigurationError(
                "Custom embedding URL not configured. Set VAULTLINK_CUSTOM_EMBEDDING_URL "
                "to the full embeddings endpoint of your server."
            )

        self.model = config.embedding_model
        self.api_key = (config.openai_api_key or "").strip()
        self._dimensions: Optional[int] = None
        self.client = client or httpx.AsyncClient(timeout=config.request_timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        if not texts:
            return []

        body = {"input": list(texts), "model": self.model}
        try:
            response = await self.client.post(self.url, json=body, headers=self._headers())
        except Exception as exc:
            if is_network_error(exc):
                print(f"CompatibleEmbedder: {self.url} unreachable, offline detected")
                raise OfflineError(f"Offline: embedding server {self.url} unreachable") from exc
            print(f"CompatibleEmbedder: embedding error: {exc}")
            raise EmbeddingError(f"Failed to generate embedding from custom server: {exc}") from exc

        if response.status_code >= 400:
            raise EmbeddingError(
                f"Custom embedding server returned {response.status_code}: {response.text}"
            )

        try:
            items = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingError(f"Malformed response from custom embedding server: {exc}") from exc

        vectors = _ordered_vectors(items, len(texts))
        if vectors:
            self._dimensions = vectors[0].dimensions
        return vectors

    def model_name(self) -> str:
        return self.model

    def dimensions(self) -> Optional[int]:
        return self._dimensions

    async def aclose(self) -> None:
        await self.client.aclose()


def create_embedder(config: VaultlinkConfig) -> EmbeddingProvider:
    """Pick the provider once from configuration.

    An explicit embedding URL wins, then a custom LLM provider with an API
    base, otherwise the hosted OpenAI endpoint.
    """
    if (config.custom_embedding_url or "").strip():
        return CompatibleEmbedder(config)

    if config.llm_provider == "custom" and (config.custom_api_base or "").strip():
        return CompatibleEmbedder(config)

    return OpenAIEmbedder(config)
