"""
Shared fixtures.

Stores are real embedded DuckDB/LanceDB files under tmp_path; the language
model and embedding model are fakes implementing the provider ABCs.
"""

from __future__ import annotations

import asyncio
import hashlib

import pytest
import pytest_asyncio

from kgbuild.ingestion.parser import COMPLETION_DELIMITER, TUPLE_DELIMITER
from kgbuild.providers.base import ChatMessage, EmbeddingProvider, LLMProvider
from kgbuild.storage.duckdb.client import DuckDBClient
from kgbuild.storage.schema import ensure_system_schema

D = TUPLE_DELIMITER


def entity_line(name: str, entity_type: str, description: str) -> str:
    return f"entity{D}{name}{D}{entity_type}{D}{description}"


def relation_line(source: str, target: str, keywords: str, description: str) -> str:
    return f"relation{D}{source}{D}{target}{D}{keywords}{D}{description}"


def extraction_output(*lines: str) -> str:
    return "\n".join([*lines, COMPLETION_DELIMITER])


class FakeLLM(LLMProvider):
    """
    Answers extraction prompts from a table keyed by chunk text.

    The first response whose key occurs in the first user message is
    returned; continuation turns get a bare completion marker. A response
    that is an Exception instance is raised instead.
    """

    def __init__(self, responses: dict[str, object] | None = None, delay: float = 0.0) -> None:
        self.responses = responses or {}
        self.delay = delay
        self.calls: list[list[ChatMessage]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call = None

    async def chat(self, messages, *, temperature=0.0, max_tokens=4096) -> str:
        self.calls.append(list(messages))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_call is not None:
                await self.on_call(messages)
            if self.delay:
                await asyncio.sleep(self.delay)
            if len(messages) > 2:
                return COMPLETION_DELIMITER
            prompt = messages[1]["content"]
            for key, response in self.responses.items():
                if key in prompt:
                    if isinstance(response, Exception):
                        raise response
                    return str(response)
            return COMPLETION_DELIMITER
        finally:
            self.in_flight -= 1

    @property
    def model_name(self) -> str:
        return "fake-llm"


class FakeEmbedding(EmbeddingProvider):
    """Deterministic vectors derived from a hash of the text."""

    def __init__(self, dimensions: int = 8) -> None:
        self._dimensions = dimensions
        self.calls: list[list[str]] = []

    @staticmethod
    def vector_for(text: str, dimensions: int = 8) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(digest[i] + 1) / 256.0 for i in range(dimensions)]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector_for(text, self._dimensions) for text in texts]

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return "fake-embedding"


@pytest.fixture(autouse=True)
def offline_tokenizer(monkeypatch):
    """Count tokens with the length heuristic instead of downloading an encoding."""
    monkeypatch.setattr("kgbuild.utils.token_count._encoding_for", lambda model: None)


@pytest_asyncio.fixture
async def client(tmp_path):
    """Connected client with the bookkeeping tables created."""
    db = DuckDBClient(tmp_path / "data")
    await db.connect()
    await ensure_system_schema(db)
    yield db
    await db.close()


async def seed_source(
    client: DuckDBClient,
    contents: list[str],
    *,
    file_key: str = "doc.md",
    namespace: str = "acme",
    database: str = "docs",
    table: str = "chunks",
) -> None:
    """Create a source chunk table and insert one row per content string."""
    await client.execute_in_database(namespace, database, [(
        f"CREATE TABLE IF NOT EXISTS {table} (chunk_index INTEGER, content VARCHAR, file_key VARCHAR)",
        None,
    )])
    await client.execute_in_database(namespace, database, [
        (
            f"INSERT INTO {table} VALUES ($chunk_index, $content, $file_key)",
            {"chunk_index": i, "content": content, "file_key": file_key},
        )
        for i, content in enumerate(contents)
    ])
