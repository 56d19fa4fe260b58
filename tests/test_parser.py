"""Tests for the extraction response parser and key helpers."""

from kgbuild.ingestion.parser import COMPLETION_DELIMITER, is_record_line, parse_extraction_output
from kgbuild.utils.text import make_chunk_ref, make_relation_key, sanitize_entity_name

from conftest import entity_line, extraction_output, relation_line


class TestSanitizeEntityName:
    """Tests for sanitize_entity_name."""

    def test_whitespace_becomes_underscore(self):
        """Inner whitespace runs collapse to one underscore."""
        assert sanitize_entity_name("  Marie   Curie ") == "Marie_Curie"

    def test_illegal_characters_removed(self):
        """Punctuation is stripped."""
        assert sanitize_entity_name("Apple Inc.") == "Apple_Inc"
        assert sanitize_entity_name("AT&T") == "ATT"

    def test_cjk_kept(self):
        """CJK ideographs survive sanitization."""
        assert sanitize_entity_name("北京 大学") == "北京_大学"

    def test_only_illegal_characters_is_empty(self):
        """A name made only of illegal characters sanitizes to nothing."""
        assert sanitize_entity_name("!!!@@@") == ""

    def test_truncated_to_100(self):
        """Long names are cut to 100 characters."""
        assert len(sanitize_entity_name("a" * 200)) == 100


class TestKeys:
    """Tests for deterministic keys."""

    def test_relation_key_order_independent(self):
        """(A, B) and (B, A) share a key."""
        assert make_relation_key("A", "B") == make_relation_key("B", "A") == "A::B"

    def test_chunk_ref(self):
        """Chunk refs combine table, file and index."""
        assert make_chunk_ref("chunks", "doc.md", 3) == "chunks:doc.md:3"


class TestParseExtractionOutput:
    """Tests for parse_extraction_output."""

    def test_entities_and_relations(self):
        """Well-formed lines become records."""
        raw = extraction_output(
            entity_line("Marie Curie", "Person", "Physicist and chemist"),
            entity_line("Sorbonne", "Organization", "University in Paris"),
            relation_line("Marie Curie", "Sorbonne", "teaching, employment", "She taught at the Sorbonne"),
        )
        result = parse_extraction_output(raw)

        assert [e.name for e in result.entities] == ["Marie_Curie", "Sorbonne"]
        assert result.entities[0].display_name == "Marie Curie"
        assert result.entities[0].entity_type == "Person"
        assert result.entities[0].description == "Physicist and chemist"

        relation = result.relations[0]
        assert relation.key == "Marie_Curie::Sorbonne"
        assert relation.keyword_list == ["employment", "teaching"]
        assert relation.description == "She taught at the Sorbonne"

    def test_relation_key_deterministic(self):
        """Swapped endpoints produce the same relation key."""
        forward = parse_extraction_output(relation_line("A", "B", "k", "d"))
        backward = parse_extraction_output(relation_line("B", "A", "k", "d"))
        assert forward.relations[0].key == backward.relations[0].key
        assert forward.relations[0].endpoints == backward.relations[0].endpoints == ("A", "B")

    def test_illegal_name_dropped(self):
        """An entity whose name is only illegal characters is skipped."""
        result = parse_extraction_output(entity_line("!!!@@@", "Person", "nobody"))
        assert result.entities == []

    def test_long_name_truncated(self):
        """A 200-character name parses to a 100-character key."""
        result = parse_extraction_output(entity_line("x" * 200, "Concept", "long"))
        assert len(result.entities[0].name) == 100

    def test_relation_with_illegal_endpoint_dropped(self):
        """A relation with an endpoint that sanitizes to nothing is skipped."""
        result = parse_extraction_output(relation_line("???", "B", "k", "d"))
        assert result.relations == []

    def test_stops_at_completion_marker(self):
        """Lines after the completion marker are ignored."""
        raw = "\n".join([
            entity_line("A", "Concept", "first"),
            COMPLETION_DELIMITER,
            entity_line("B", "Concept", "after the end"),
        ])
        result = parse_extraction_output(raw)
        assert [e.name for e in result.entities] == ["A"]

    def test_malformed_lines_skipped(self):
        """Short lines, unknown tags and prose do not abort parsing."""
        raw = extraction_output(
            "Here are the entities:",
            "entity<|#|>OnlyName",
            "event<|#|>X<|#|>Y<|#|>Z",
            "relation<|#|>A<|#|>B<|#|>k",
            entity_line("Kept", "Concept", "survives"),
        )
        result = parse_extraction_output(raw)
        assert [e.name for e in result.entities] == ["Kept"]
        assert result.relations == []

    def test_missing_type_defaults_to_other(self):
        """An empty type field becomes Other."""
        result = parse_extraction_output(entity_line("Thing", "", "something"))
        assert result.entities[0].entity_type == "Other"

    def test_tags_case_insensitive(self):
        """Tags are matched without regard to case."""
        result = parse_extraction_output("ENTITY<|#|>A<|#|>Concept<|#|>d")
        assert len(result.entities) == 1

    def test_empty_input(self):
        """Empty or None input yields an empty result."""
        assert parse_extraction_output("").is_empty
        assert parse_extraction_output(None).is_empty

    def test_duplicates_kept_in_order(self):
        """Duplicate keys are left for the upsert engine to fold."""
        raw = extraction_output(
            entity_line("A", "Concept", "one"),
            entity_line("A", "Concept", "two"),
        )
        result = parse_extraction_output(raw)
        assert [e.description for e in result.entities] == ["one", "two"]


class TestIsRecordLine:
    """Tests for is_record_line."""

    def test_record_lines(self):
        assert is_record_line(entity_line("A", "B", "C"))
        assert is_record_line(relation_line("A", "B", "C", "D"))

    def test_other_lines(self):
        assert not is_record_line("entity without delimiter")
        assert not is_record_line("note<|#|>A")
