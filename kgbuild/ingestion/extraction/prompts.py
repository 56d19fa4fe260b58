"""
Extraction Prompts

Templates for the delimiter-grammar extraction and its continuation
("gleaning") turns. Placeholders:

    {entity_types}          comma-separated entity types
    {language}              output language
    {tuple_delimiter}       field delimiter, see parser.TUPLE_DELIMITER
    {completion_delimiter}  end marker, see parser.COMPLETION_DELIMITER
    {examples}              few-shot examples, already formatted
    {input_text}            the chunk text
"""

# -----------------------------------------------------------------------------
# System Prompt
# -----------------------------------------------------------------------------

EXTRACTION_SYSTEM_PROMPT = """\
You are a knowledge graph specialist extracting entities and relationships from text.

## Entities
For every clearly named entity in the text output one line:
entity{tuple_delimiter}<entity_name>{tuple_delimiter}<entity_type>{tuple_delimiter}<entity_description>

- entity_name: the name as written in the text, title case for English names
- entity_type: one of [{entity_types}]; use Other if none fits
- entity_description: what the text says about the entity, self-contained

## Relationships
For every pair of entities that the text clearly relates output one line:
relation{tuple_delimiter}<source_entity>{tuple_delimiter}<target_entity>{tuple_delimiter}<keywords>{tuple_delimiter}<relationship_description>

- source_entity and target_entity must be names from your entity lines
- keywords: comma-separated high-level keywords of the relationship
- relationship_description: why the two entities are related

## Rules
- One record per line, no numbering, no markdown, no extra text
- Write names and descriptions in {language}; keep proper nouns in their original language
- Do not use pronouns in descriptions; name the entity instead
- Output entities first, then relationships
- End the output with {completion_delimiter} on its own line

## Examples
{examples}"""

# -----------------------------------------------------------------------------
# User Prompts
# -----------------------------------------------------------------------------

EXTRACTION_USER_TEMPLATE = """\
Extract entities and relationships from the text below.

Entity types: [{entity_types}]

TEXT:
```
{input_text}
```

Output:"""

CONTINUE_EXTRACTION_TEMPLATE = """\
Some entities or relationships were missed in the last extraction.
Output ONLY the missed or incorrectly formatted records from the text, using the same format.
Do not repeat records that were already correct.
End the output with {completion_delimiter} on its own line.

Output:"""

# -----------------------------------------------------------------------------
# Few-shot Examples
# -----------------------------------------------------------------------------

EXTRACTION_EXAMPLES = [
    """\
TEXT:
```
Marie Curie joined the University of Paris in 1906, succeeding her husband Pierre Curie \
as professor of physics. Her research on radioactivity earned her a second Nobel Prize in 1911.
```

Output:
entity{tuple_delimiter}Marie Curie{tuple_delimiter}Person{tuple_delimiter}Physicist and chemist who became professor of physics at the University of Paris in 1906 and won a second Nobel Prize in 1911.
entity{tuple_delimiter}University of Paris{tuple_delimiter}Organization{tuple_delimiter}University where Marie Curie held the professorship of physics from 1906.
entity{tuple_delimiter}Pierre Curie{tuple_delimiter}Person{tuple_delimiter}Physicist and husband of Marie Curie, whom she succeeded as professor.
entity{tuple_delimiter}Radioactivity{tuple_delimiter}Concept{tuple_delimiter}Field of research of Marie Curie that earned her a Nobel Prize.
relation{tuple_delimiter}Marie Curie{tuple_delimiter}University of Paris{tuple_delimiter}employment, professorship{tuple_delimiter}Marie Curie joined the University of Paris as professor of physics in 1906.
relation{tuple_delimiter}Marie Curie{tuple_delimiter}Pierre Curie{tuple_delimiter}marriage, succession{tuple_delimiter}Marie Curie succeeded her husband Pierre Curie as professor.
relation{tuple_delimiter}Marie Curie{tuple_delimiter}Radioactivity{tuple_delimiter}research, Nobel Prize{tuple_delimiter}Marie Curie's research on radioactivity earned her a second Nobel Prize.
{completion_delimiter}""",
    """\
TEXT:
```
The Rhine flows from the Swiss Alps through Germany before reaching the North Sea \
near Rotterdam, the largest port in Europe.
```

Output:
entity{tuple_delimiter}Rhine{tuple_delimiter}Location{tuple_delimiter}River flowing from the Swiss Alps through Germany into the North Sea.
entity{tuple_delimiter}Swiss Alps{tuple_delimiter}Location{tuple_delimiter}Mountain range where the Rhine begins.
entity{tuple_delimiter}Germany{tuple_delimiter}Location{tuple_delimiter}Country the Rhine flows through.
entity{tuple_delimiter}North Sea{tuple_delimiter}Location{tuple_delimiter}Sea the Rhine flows into near Rotterdam.
entity{tuple_delimiter}Rotterdam{tuple_delimiter}Location{tuple_delimiter}City near the mouth of the Rhine with the largest port in Europe.
relation{tuple_delimiter}Rhine{tuple_delimiter}Swiss Alps{tuple_delimiter}source, geography{tuple_delimiter}The Rhine originates in the Swiss Alps.
relation{tuple_delimiter}Rhine{tuple_delimiter}Germany{tuple_delimiter}flows through, geography{tuple_delimiter}The Rhine flows through Germany.
relation{tuple_delimiter}Rhine{tuple_delimiter}North Sea{tuple_delimiter}river mouth, geography{tuple_delimiter}The Rhine reaches the North Sea near Rotterdam.
relation{tuple_delimiter}Rotterdam{tuple_delimiter}North Sea{tuple_delimiter}port, location{tuple_delimiter}Rotterdam lies where the Rhine reaches the North Sea.
{completion_delimiter}""",
]
