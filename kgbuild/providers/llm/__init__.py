"""
Language-Model Providers

Implementations:
    openai: OpenAI-compatible chat completions via LangChain
"""

from kgbuild.providers.llm.openai import OpenAILLMProvider

__all__ = ["OpenAILLMProvider"]
