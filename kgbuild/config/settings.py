"""
KGBuildConfig - Configuration Management

Sensible defaults with full override capability.

Example:
    >>> # Use defaults (reads from environment)
    >>> builder = KnowledgeGraphBuilder()

    >>> # Explicit configuration
    >>> config = KGBuildConfig(
    ...     data_dir="./kb_data",
    ...     llm_model="gpt-4o",
    ... )
    >>> builder = KnowledgeGraphBuilder(config=config)

    >>> # From config file
    >>> config = KGBuildConfig.from_file("./kgbuild.toml")

Environment Variables:
    KGBUILD_DATA_DIR - Directory holding the system and knowledge-base stores
    KGBUILD_LLM_PROTOCOL - Language-model protocol ("openai")
    KGBUILD_LLM_MODEL - Model used for extraction
    KGBUILD_LLM_BASE_URL - Base URL of an OpenAI-compatible endpoint
    KGBUILD_EMBEDDING_MODEL - Embedding model name
    KGBUILD_EMBEDDING_BASE_URL - Base URL for the embedding endpoint
    KGBUILD_EMBEDDING_DIMENSIONS - Embedding vector dimensions
    KGBUILD_EXTRACTION_CONCURRENCY - Chunks extracted in parallel by stage 1
    OPENAI_API_KEY - OpenAI API key (standard name)
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


DEFAULT_ENTITY_TYPES = ["Person", "Organization", "Location", "Event", "Concept"]


class KGBuildConfig:
    """Configuration for the knowledge-graph build pipeline."""

    # === Storage Configuration ===

    data_dir: Path = Path("./kgbuild_data")
    """Root directory for DuckDB files and LanceDB indices"""

    home_database: str = "kg_home"
    """Name of the system database holding task bookkeeping tables"""

    lancedb_index_type: str = "IVF_PQ"
    """Vector index type for LanceDB"""

    lancedb_index_min_rows: int = 256
    """Rows required before an ANN index is built (smaller tables use flat search)"""

    # === LLM Configuration ===

    llm_protocol: str = "openai"
    """Language-model protocol: "openai" (any OpenAI-compatible endpoint)"""

    llm_model: str = "gpt-4o-mini"
    """Default model for entity/relation extraction"""

    llm_base_url: str | None = None
    """Optional base URL for an OpenAI-compatible endpoint"""

    llm_temperature: float = 0.0
    """Sampling temperature for extraction calls"""

    llm_max_tokens: int = 4096
    """Maximum tokens per extraction response"""

    llm_timeout: float = 120.0
    """Per-request timeout in seconds enforced by the provider client"""

    llm_max_retries: int = 2
    """Retries performed by the provider client before a call fails"""

    # === Embedding Configuration ===

    embedding_protocol: str = "openai"
    """Embedding protocol: "openai" """

    embedding_model: str = "text-embedding-3-small"
    """Embedding model name"""

    embedding_base_url: str | None = None
    """Optional base URL for the embedding endpoint"""

    embedding_dimensions: int = 1536
    """Embedding vector dimensions requested from the provider"""

    embedding_batch_size: int = 32
    """Entities embedded per provider call"""

    embedding_max_tokens: int = 512
    """Token budget for the description part of an embedding text"""

    embedding_timeout: float = 30.0
    """Timeout in seconds for a single embedding batch"""

    # === API Keys ===

    openai_api_key: str | None = None

    # === Scheduler Configuration ===

    extraction_concurrency: int = 1
    """Chunks stage 1 keeps in flight at once (adjustable at runtime)"""

    extraction_idle_interval: float = 2.0
    """Seconds between stage 1 polls while no chunk is pending"""

    extraction_active_interval: float = 0.0
    """Seconds between stage 1 polls while chunks are pending"""

    build_idle_interval: float = 5.0
    """Seconds between stage 2 polls while idle"""

    build_active_interval: float = 0.0
    """Seconds between stage 2 polls while build chunks are pending"""

    build_batch_size: int = 5
    """Build chunks processed (one at a time) per stage 2 tick"""

    embedding_idle_interval: float = 5.0
    """Seconds between stage 3 scans while nothing is stale"""

    embedding_active_interval: float = 0.1
    """Seconds between stage 3 batches while stale rows remain"""

    # === Processing Configuration ===

    upsert_batch_size: int = 30
    """Statements per graph upsert transaction"""

    upsert_max_retries: int = 3
    """Retries of a statement batch that hit a write conflict"""

    max_gleaning: int = 0
    """Continuation turns asking the model for entities it missed"""

    default_entity_types: list[str] = DEFAULT_ENTITY_TYPES
    """Entity types used when a task does not specify its own"""

    default_language: str = "English"
    """Output language requested from the extraction model"""

    def __init__(self, **kwargs: Any) -> None:
        """
        Initialize configuration.

        Args:
            **kwargs: Override any configuration option
        """
        self.default_entity_types = list(DEFAULT_ENTITY_TYPES)

        # Load from environment first
        self._load_from_env()

        # Apply explicit overrides
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise ValueError(f"Unknown configuration option: {key}")

        self.data_dir = Path(self.data_dir)

    def _load_from_env(self) -> None:
        """Load configuration from environment variables."""
        self.openai_api_key = os.getenv("OPENAI_API_KEY")

        if data_dir := os.getenv("KGBUILD_DATA_DIR"):
            self.data_dir = Path(data_dir)
        if protocol := os.getenv("KGBUILD_LLM_PROTOCOL"):
            self.llm_protocol = protocol
        if model := os.getenv("KGBUILD_LLM_MODEL"):
            self.llm_model = model
        if base_url := os.getenv("KGBUILD_LLM_BASE_URL"):
            self.llm_base_url = base_url
        if model := os.getenv("KGBUILD_EMBEDDING_MODEL"):
            self.embedding_model = model
        if base_url := os.getenv("KGBUILD_EMBEDDING_BASE_URL"):
            self.embedding_base_url = base_url
        if dimensions := os.getenv("KGBUILD_EMBEDDING_DIMENSIONS"):
            self.embedding_dimensions = int(dimensions)
        if concurrency := os.getenv("KGBUILD_EXTRACTION_CONCURRENCY"):
            self.extraction_concurrency = int(concurrency)

    @classmethod
    def from_file(cls, path: str | Path) -> "KGBuildConfig":
        """
        Load configuration from TOML file.

        Nested sections are flattened with a prefix per section.

        Example TOML:
            data_dir = "./kb_data"

            [llm]
            model = "gpt-4o-mini"
            base_url = "http://localhost:8000/v1"

            [embedding]
            model = "text-embedding-3-small"
            dimensions = 1536

            [scheduler]
            extraction_concurrency = 4

        Args:
            path: Path to TOML configuration file

        Returns:
            KGBuildConfig instance with values from file

        Raises:
            FileNotFoundError: If config file doesn't exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        data = _load_toml(path)

        flat_config: dict[str, Any] = {}

        section_mapping = {
            "llm": "llm_",
            "embedding": "embedding_",
            "api_keys": "",  # api_keys.openai -> openai_api_key
            "scheduler": "",
            "processing": "",
            "storage": "",
        }

        for section, prefix in section_mapping.items():
            if section in data:
                for key, value in data[section].items():
                    if section == "api_keys":
                        flat_config[f"{key}_api_key"] = value
                    else:
                        flat_config[f"{prefix}{key}"] = value

        for key, value in data.items():
            if key not in section_mapping and not isinstance(value, dict):
                flat_config[key] = value

        return cls(**flat_config)

    @classmethod
    def from_env(cls) -> "KGBuildConfig":
        """Load configuration from environment variables only."""
        return cls()

    def to_file(self, path: str | Path) -> None:
        """
        Save configuration to TOML file.

        API keys are excluded; set them through the environment.

        Args:
            path: Path to write TOML configuration file
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        sections: dict[str, dict[str, Any]] = {
            "llm": {
                "protocol": self.llm_protocol,
                "model": self.llm_model,
                "base_url": self.llm_base_url,
                "temperature": self.llm_temperature,
                "max_tokens": self.llm_max_tokens,
                "timeout": self.llm_timeout,
                "max_retries": self.llm_max_retries,
            },
            "embedding": {
                "protocol": self.embedding_protocol,
                "model": self.embedding_model,
                "base_url": self.embedding_base_url,
                "dimensions": self.embedding_dimensions,
                "batch_size": self.embedding_batch_size,
                "max_tokens": self.embedding_max_tokens,
                "timeout": self.embedding_timeout,
            },
            "scheduler": {
                "extraction_concurrency": self.extraction_concurrency,
                "extraction_idle_interval": self.extraction_idle_interval,
                "extraction_active_interval": self.extraction_active_interval,
                "build_idle_interval": self.build_idle_interval,
                "build_active_interval": self.build_active_interval,
                "build_batch_size": self.build_batch_size,
                "embedding_idle_interval": self.embedding_idle_interval,
                "embedding_active_interval": self.embedding_active_interval,
            },
            "processing": {
                "upsert_batch_size": self.upsert_batch_size,
                "upsert_max_retries": self.upsert_max_retries,
                "max_gleaning": self.max_gleaning,
                "default_entity_types": self.default_entity_types,
                "default_language": self.default_language,
            },
            "storage": {
                "data_dir": str(self.data_dir),
                "home_database": self.home_database,
                "lancedb_index_type": self.lancedb_index_type,
                "lancedb_index_min_rows": self.lancedb_index_min_rows,
            },
        }

        # Build TOML string manually (avoids extra dependency)
        lines = ["# kgbuild configuration", ""]

        for section_name, section_values in sections.items():
            lines.append(f"[{section_name}]")
            for key, value in section_values.items():
                if value is None:
                    continue
                lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")

        lines.extend([
            "# API keys should be set via environment variables:",
            "# OPENAI_API_KEY",
            "",
        ])

        path.write_text("\n".join(lines))

    def with_overrides(self, **kwargs: Any) -> "KGBuildConfig":
        """Return new config with specified overrides."""
        new_config = KGBuildConfig.__new__(KGBuildConfig)
        for key in dir(self):
            if not key.startswith("_") and not callable(getattr(self, key)):
                setattr(new_config, key, getattr(self, key))
        for key, value in kwargs.items():
            if not hasattr(new_config, key):
                raise ValueError(f"Unknown configuration option: {key}")
            setattr(new_config, key, value)
        new_config.data_dir = Path(new_config.data_dir)
        return new_config


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
