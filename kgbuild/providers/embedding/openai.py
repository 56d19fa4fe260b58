"""
OpenAI-Compatible Embedding Provider (LangChain-based)

Implements EmbeddingProvider using LangChain's OpenAIEmbeddings.

Models:
    - text-embedding-3-small: 1536 dimensions (can be shortened)
    - text-embedding-3-large: 3072 dimensions (can be shortened)

Example:
    >>> provider = OpenAIEmbeddingProvider(model="text-embedding-3-small", dimensions=512)
    >>> vectors = await provider.embed(["Apple Inc: technology company"])
    >>> len(vectors[0])
    512
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from kgbuild.config.providers import MODEL_DIMENSIONS
from kgbuild.errors import ProviderError
from kgbuild.providers.base import EmbeddingProvider

if TYPE_CHECKING:
    from langchain_openai import OpenAIEmbeddings

DEFAULT_MODEL = "text-embedding-3-small"


def _get_openai_embeddings(
    api_key: str | None = None,
    model: str = DEFAULT_MODEL,
    base_url: str | None = None,
    dimensions: int | None = None,
    timeout: float | None = None,
) -> "OpenAIEmbeddings":
    """
    Get an OpenAIEmbeddings instance.

    Uses lazy import to avoid requiring langchain-openai unless actually used.

    Raises:
        ImportError: If langchain-openai package is not installed
    """
    try:
        from langchain_openai import OpenAIEmbeddings
    except ImportError:
        raise ImportError(
            "OpenAI embedding provider requires the 'langchain-openai' package. "
            "Install with: pip install langchain-openai"
        )

    kwargs: dict[str, Any] = {"model": model}
    if api_key:
        from pydantic import SecretStr
        kwargs["api_key"] = SecretStr(api_key)
    if base_url:
        kwargs["base_url"] = base_url
        # Non-OpenAI servers do not accept pre-tokenized input
        kwargs["check_embedding_ctx_length"] = False
    if dimensions is not None and model.startswith("text-embedding-3"):
        kwargs["dimensions"] = dimensions
    if timeout is not None:
        kwargs["timeout"] = timeout
    return OpenAIEmbeddings(**kwargs)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI-compatible embedding provider using LangChain.

    Args:
        api_key: API key. If None, uses OPENAI_API_KEY environment variable.
        model: Model to use
        base_url: Optional OpenAI-compatible endpoint
        dimensions: Requested vector size (defaults to the model's native size)
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        base_url: str | None = None,
        dimensions: int | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._requested_dimensions = dimensions
        self._dimensions = dimensions or MODEL_DIMENSIONS.get(model, 1536)
        self._timeout = timeout
        # Lazy initialization
        self._client: OpenAIEmbeddings | None = None

    def _get_client(self) -> "OpenAIEmbeddings":
        """Get or create the OpenAIEmbeddings client."""
        if self._client is None:
            self._client = _get_openai_embeddings(
                api_key=self._api_key,
                model=self._model,
                base_url=self._base_url,
                dimensions=self._requested_dimensions,
                timeout=self._timeout,
            )
        return self._client

    @property
    def dimensions(self) -> int:
        """Embedding dimensions produced by this provider."""
        return self._dimensions

    @property
    def model_name(self) -> str:
        """Current model name."""
        return self._model

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors (same order as input)

        Raises:
            ProviderError: If the request fails
        """
        if not texts:
            return []

        client = self._get_client()

        # LangChain's embed_documents is synchronous, run in thread pool
        try:
            return await asyncio.to_thread(client.embed_documents, texts)
        except Exception as e:
            raise ProviderError(f"{self._model}: {type(e).__name__}: {e}") from e
