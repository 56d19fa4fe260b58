"""Tests for the delimiter-grammar extractor."""

from unittest.mock import AsyncMock

import pytest

from kgbuild.errors import ExtractionOutputError, ProviderError
from kgbuild.ingestion.extraction import build_extraction_messages, combine_turns, extract_from_chunk
from kgbuild.ingestion.parser import COMPLETION_DELIMITER, TUPLE_DELIMITER

from conftest import FakeLLM, entity_line, extraction_output


class TestBuildExtractionMessages:
    """Tests for prompt construction."""

    def test_system_and_user_messages(self):
        """The first turn is a system prompt and a user prompt with the chunk."""
        messages = build_extraction_messages("Ada Lovelace wrote notes.", entity_types=["Person"])
        assert [m["role"] for m in messages] == ["system", "user"]
        assert "Ada Lovelace wrote notes." in messages[1]["content"]

    def test_delimiters_and_types_in_system_prompt(self):
        """The grammar, language and entity types are filled in."""
        messages = build_extraction_messages("text", entity_types=["Gene", "Protein"], language="French")
        system = messages[0]["content"]
        assert TUPLE_DELIMITER in system
        assert COMPLETION_DELIMITER in system
        assert "Gene, Protein" in system
        assert "French" in system

    def test_default_entity_types(self):
        """Without types the configured defaults are used."""
        messages = build_extraction_messages("text")
        assert "Person" in messages[0]["content"]


class TestCombineTurns:
    """Tests for combine_turns."""

    def test_single_marker_appended(self):
        """Markers of every turn are replaced by one trailing marker."""
        first = extraction_output(entity_line("A", "Concept", "a"))
        second = extraction_output(entity_line("B", "Concept", "b"))
        combined = combine_turns([first, second])
        assert combined.count(COMPLETION_DELIMITER) == 1
        assert combined.endswith(COMPLETION_DELIMITER)
        assert entity_line("A", "Concept", "a") in combined
        assert entity_line("B", "Concept", "b") in combined

    def test_marker_only_is_valid(self):
        """A chunk with nothing to extract yields just the marker."""
        assert combine_turns([COMPLETION_DELIMITER]) == COMPLETION_DELIMITER

    def test_missing_marker_with_records_is_valid(self):
        """Record lines without a marker are accepted."""
        combined = combine_turns([entity_line("A", "Concept", "a")])
        assert combined.endswith(COMPLETION_DELIMITER)

    def test_empty_output_raises(self):
        """Whitespace-only output is an extraction error."""
        with pytest.raises(ExtractionOutputError, match="empty extraction output"):
            combine_turns(["  \n "])

    def test_malformed_output_raises(self):
        """Prose with no record and no marker is an extraction error."""
        with pytest.raises(ExtractionOutputError, match="malformed extraction output"):
            combine_turns(["I could not find any entities."])


class TestExtractFromChunk:
    """Tests for extract_from_chunk."""

    @pytest.mark.asyncio
    async def test_single_turn(self):
        """Without gleaning the model is called once."""
        llm = FakeLLM({"Curie": extraction_output(entity_line("Marie Curie", "Person", "Physicist"))})
        raw = await extract_from_chunk("Marie Curie was a physicist.", llm)
        assert len(llm.calls) == 1
        assert "Marie Curie" in raw

    @pytest.mark.asyncio
    async def test_gleaning_turns(self):
        """Each gleaning turn replays the conversation plus a continue prompt."""
        llm = FakeLLM({"Curie": extraction_output(entity_line("Marie Curie", "Person", "Physicist"))})
        raw = await extract_from_chunk("Marie Curie was a physicist.", llm, max_gleaning=2)

        assert len(llm.calls) == 3
        assert [m["role"] for m in llm.calls[1]] == ["system", "user", "assistant", "user"]
        assert len(llm.calls[2]) == 6
        assert raw.count(COMPLETION_DELIMITER) == 1

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        """A failing model call surfaces to the caller."""
        llm = AsyncMock()
        llm.chat = AsyncMock(side_effect=ProviderError("rate limited"))
        with pytest.raises(ProviderError, match="rate limited"):
            await extract_from_chunk("text", llm)

    @pytest.mark.asyncio
    async def test_empty_answer_raises(self):
        """An empty model answer is an extraction error."""
        llm = AsyncMock()
        llm.chat = AsyncMock(return_value="")
        with pytest.raises(ExtractionOutputError):
            await extract_from_chunk("text", llm, max_gleaning=1)
        assert llm.chat.await_count == 1
