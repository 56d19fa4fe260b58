"""
Provider Configurations

Default model configurations for each language-model/embedding protocol.

When a task selects a protocol other than the configured one without naming
a model, these defaults apply:
    >>> get_llm_defaults("openai")["model"]
    'gpt-4o-mini'
"""

# Language-model protocol defaults
LLM_DEFAULTS = {
    "openai": {
        "model": "gpt-4o-mini",
    },
}

# Embedding protocol defaults
EMBEDDING_DEFAULTS = {
    "openai": {
        "model": "text-embedding-3-small",
        "dimensions": 1536,
    },
}

# Native dimensions of known embedding models
MODEL_DIMENSIONS = {
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
}


def get_llm_defaults(protocol: str) -> dict:
    try:
        return LLM_DEFAULTS[protocol.lower()]
    except KeyError:
        raise ValueError(f"Unknown LLM protocol: {protocol}") from None


def get_embedding_defaults(protocol: str) -> dict:
    try:
        return EMBEDDING_DEFAULTS[protocol.lower()]
    except KeyError:
        raise ValueError(f"Unknown embedding protocol: {protocol}") from None
