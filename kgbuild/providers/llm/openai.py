"""
OpenAI-Compatible LLM Provider (LangChain-based)

Implements LLMProvider using LangChain's ChatOpenAI. Any endpoint speaking
the OpenAI chat-completions protocol works through base_url.

Example:
    >>> provider = OpenAILLMProvider(api_key="sk-...", model="gpt-4o-mini")
    >>> text = await provider.chat([
    ...     {"role": "system", "content": "You extract entities."},
    ...     {"role": "user", "content": "Apple hired Tim Cook."},
    ... ])
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kgbuild.errors import ProviderError
from kgbuild.providers.base import ChatMessage, LLMProvider

if TYPE_CHECKING:
    from langchain_core.messages import BaseMessage
    from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)


def _get_chat_openai(
    api_key: str | None = None,
    model: str = "gpt-4o-mini",
    base_url: str | None = None,
    timeout: float | None = None,
    max_retries: int = 2,
) -> "ChatOpenAI":
    """
    Get a ChatOpenAI instance.

    Uses lazy import to avoid requiring langchain-openai unless actually used.

    Raises:
        ImportError: If langchain-openai package is not installed
    """
    try:
        from langchain_openai import ChatOpenAI
    except ImportError:
        raise ImportError(
            "OpenAI provider requires the 'langchain-openai' package. "
            "Install with: pip install langchain-openai"
        )

    kwargs: dict[str, Any] = {"model": model, "max_retries": max_retries}
    if api_key:
        kwargs["api_key"] = api_key
    if base_url:
        kwargs["base_url"] = base_url
    if timeout is not None:
        kwargs["timeout"] = timeout

    return ChatOpenAI(**kwargs)


def to_langchain_messages(messages: list[ChatMessage]) -> list["BaseMessage"]:
    """Convert role/content dicts into LangChain message objects."""
    from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

    converted: list[BaseMessage] = []
    for message in messages:
        role = message["role"]
        if role == "system":
            converted.append(SystemMessage(content=message["content"]))
        elif role == "assistant":
            converted.append(AIMessage(content=message["content"]))
        elif role == "user":
            converted.append(HumanMessage(content=message["content"]))
        else:
            raise ValueError(f"Unknown message role: {role}")
    return converted


def _content_text(content: Any) -> str:
    """Flatten LangChain message content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content)


class OpenAILLMProvider(LLMProvider):
    """
    OpenAI-compatible chat provider using LangChain.

    Args:
        api_key: API key. If None, uses OPENAI_API_KEY environment variable.
        model: Model to use
        base_url: Optional OpenAI-compatible endpoint
        timeout: Request timeout in seconds
        max_retries: Client-side retries for transient errors
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        timeout: float | None = 120.0,
        max_retries: int = 2,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._timeout = timeout
        self._max_retries = max_retries
        # Lazy initialization - create client on first use
        self._client: ChatOpenAI | None = None

    def _get_client(self) -> "ChatOpenAI":
        """Get or create the ChatOpenAI client."""
        if self._client is None:
            self._client = _get_chat_openai(
                api_key=self._api_key,
                model=self._model,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=self._max_retries,
            )
        return self._client

    @property
    def model_name(self) -> str:
        """Current model name."""
        return self._model

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> str:
        """
        Complete a conversation.

        Args:
            messages: System/user/assistant turns in order
            temperature: Sampling temperature (0.0 = deterministic)
            max_tokens: Maximum tokens in response

        Returns:
            The assistant's raw text

        Raises:
            ProviderError: If the request fails or times out
        """
        client = self._get_client().bind(temperature=temperature, max_tokens=max_tokens)
        try:
            response = await client.ainvoke(to_langchain_messages(messages))
        except Exception as e:
            raise ProviderError(f"{self._model}: {type(e).__name__}: {e}") from e

        text = _content_text(response.content)
        logger.debug(f"{self._model} returned {len(text)} chars")
        return text
