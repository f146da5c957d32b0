"""Exception hierarchy for the search-and-cite pipeline.

Architectural role:
    Gives every failure a phase label so front ends can report which stage and
    which external call aborted a run. Collaborators translate transport
    exceptions (`httpx`, `requests`, timeouts) into these classes at their
    boundary.

Failure classes:
    - Recoverable per item: `FetchError`, `ParseError` (scrape stage) and
      `EmbeddingError` when the embedding policy is `skip`.
    - Fatal for the run: `ProviderError`, `AnswerError`, `ConfigurationError`.
    - Programming errors, never caught by the pipeline: `IndexStateError`,
      `LinkageError`, `StoreSealedError`.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline failures.

    Args:
        message: Human-readable failure description.
        phase: Pipeline phase label (`search`, `scrape`, `embed`, `index`,
            `retrieve`, `answer`, `config`).
        call: Optional description of the external call that failed.
    """

    default_phase = "pipeline"

    def __init__(self, message: str, *, phase: str | None = None, call: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase or self.default_phase
        self.call = call

    def __str__(self) -> str:
        if self.call:
            return f"[{self.phase}] {self.call}: {self.message}"
        return f"[{self.phase}] {self.message}"


class ConfigurationError(PipelineError):
    """Missing or invalid runtime settings."""

    default_phase = "config"


class ProviderError(PipelineError):
    """Search provider call failed. Aborts the run."""

    default_phase = "search"


class FetchError(PipelineError):
    """Network failure while fetching one source page."""

    default_phase = "scrape"


class ParseError(PipelineError):
    """Fetched document could not be turned into text."""

    default_phase = "scrape"


class EmbeddingError(PipelineError):
    """Embedding call failed or timed out."""

    default_phase = "embed"


class AnswerError(PipelineError):
    """Answer-generation transport failed."""

    default_phase = "answer"


class IndexStateError(PipelineError):
    """Vector index used outside its insert -> build -> query lifecycle."""

    default_phase = "index"


class LinkageError(PipelineError):
    """Chunk/source bookkeeping is inconsistent."""

    default_phase = "retrieve"


class StoreSealedError(LinkageError):
    """Mutation attempted after the request store was sealed."""
