"""
Embedding Providers

Implementations:
    openai: OpenAI-compatible embeddings via LangChain
"""

from kgbuild.providers.embedding.openai import OpenAIEmbeddingProvider

__all__ = ["OpenAIEmbeddingProvider"]
