"""
Exception Hierarchy

Every failure in the pipeline is scoped to a task, a chunk or a single call.
Scheduler loops catch these and record them on rows; administrative calls
raise them to the caller.

Taxonomy:
    StoreUnavailableError: the store cannot be reached (left for retry)
    ProviderError: language-model or embedding call failed
    ExtractionOutputError: model answered with empty or malformed output
    CacheMissError: a build chunk has no cached extraction text
    UpsertError: a graph statement batch failed after retries
"""

from __future__ import annotations


class KGBuildError(Exception):
    """Base class for all kgbuild errors."""


class StoreUnavailableError(KGBuildError):
    """The embedded store is not connected or its files cannot be opened."""


class ProviderError(KGBuildError):
    """A language-model or embedding provider call failed."""


class ExtractionOutputError(ProviderError):
    """The language model returned empty or malformed extraction output."""


class CacheMissError(KGBuildError):
    """No cached extraction text exists for a build chunk's source chunk."""


class UpsertError(KGBuildError):
    """A batch of graph statements could not be applied."""


class TaskNotFoundError(KGBuildError):
    """No task (or chunk) matches the given identifier."""


class InvalidTaskStateError(KGBuildError):
    """The requested administrative action is not valid in the current state."""


class NoSourceChunksError(KGBuildError):
    """The source table holds no rows for the submitted file."""


class InvalidIdentifierError(KGBuildError, ValueError):
    """A namespace, database or table name cannot be used as an identifier."""
