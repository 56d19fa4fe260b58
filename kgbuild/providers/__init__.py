"""
Provider Abstractions

Pluggable language-model and embedding providers, plus factories that build
them from configuration.

Supported protocols:
    LLM: openai (any OpenAI-compatible endpoint)
    Embedding: openai (any OpenAI-compatible endpoint)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from kgbuild.config.providers import get_embedding_defaults, get_llm_defaults
from kgbuild.providers.base import ChatMessage, EmbeddingProvider, LLMProvider

if TYPE_CHECKING:
    from kgbuild.config import KGBuildConfig
    from kgbuild.types import ExtractionConfig


def create_llm_provider(
    config: "KGBuildConfig",
    extraction: "ExtractionConfig | None" = None,
) -> LLMProvider:
    """
    Create a language-model provider for a task.

    Task-level settings (model, protocol, base_url) override the config. A
    task that switches protocol without naming a model gets that protocol's
    default model.

    Raises:
        ValueError: If the protocol is not supported
    """
    protocol = ((extraction and extraction.protocol) or config.llm_protocol).lower()
    defaults = get_llm_defaults(protocol)
    if extraction and extraction.model:
        model = extraction.model
    elif protocol == config.llm_protocol.lower():
        model = config.llm_model or defaults["model"]
    else:
        model = defaults["model"]
    base_url = (extraction and extraction.base_url) or config.llm_base_url

    if protocol == "openai":
        from kgbuild.providers.llm.openai import OpenAILLMProvider
        return OpenAILLMProvider(
            api_key=config.openai_api_key,
            model=model,
            base_url=base_url,
            timeout=config.llm_timeout,
            max_retries=config.llm_max_retries,
        )
    raise ValueError(f"Unknown LLM protocol: {protocol}")


def create_embedding_provider(config: "KGBuildConfig") -> EmbeddingProvider:
    """
    Create the embedding provider used by stage 3.

    Raises:
        ValueError: If the protocol is not supported
    """
    protocol = config.embedding_protocol.lower()
    defaults = get_embedding_defaults(protocol)

    if protocol == "openai":
        from kgbuild.providers.embedding.openai import OpenAIEmbeddingProvider
        return OpenAIEmbeddingProvider(
            api_key=config.openai_api_key,
            model=config.embedding_model or defaults["model"],
            base_url=config.embedding_base_url,
            dimensions=config.embedding_dimensions or defaults["dimensions"],
            timeout=config.embedding_timeout,
        )
    raise ValueError(f"Unknown embedding protocol: {protocol}")


__all__ = [
    "ChatMessage",
    "LLMProvider",
    "EmbeddingProvider",
    "create_llm_provider",
    "create_embedding_provider",
]
