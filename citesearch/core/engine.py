"""Core request orchestration: search, scrape, embed, index, retrieve.

Architectural role:
    Provides the single pipeline entry point used by the CLI and HTTP layers to
    turn one user query into an ordered list of citation records, and the
    answer stage that streams a cited response over those records.

Control-flow model:
    1. Reject blank queries.
    2. Probe the embedding dimension by embedding the query once; the same
       vector is reused for the final search.
    3. Create the per-run `RequestStore` and `VectorIndex`.
    4. Search phase (barrier): one provider call fills the store with sources.
    5. Scrape phase (barrier): every source is fetched and extracted
       concurrently; failures leave that source without content.
    6. Embed phase (barrier): content is chunked, embedded, linked and indexed.
    7. `build()` the index and search it with the query vector.
    8. Resolve ids into numbered citation records and seal the store.

Interaction surface:
    - Web: `WebSearchClient`, `PageScraper` via `FetchCoordinator`.
    - Models: `ModelBackend` for both embeddings and answers.
    - Retrieval: `ChunkingEmbeddingPipeline`, `VectorIndex`, `assemble`.

Error handling strategy:
    Recoverable failures (per-source scrape errors, per-chunk embedding errors
    under the `skip` policy) are absorbed by the phase drivers. Everything that
    reaches this module is fatal: it is logged with the failing phase and
    re-raised unchanged so callers see the original `PipelineError`.

Determinism:
    For fixed collaborator outputs and a deterministic embedder the returned
    record order is deterministic. Chunk ids may differ between runs because
    embedding calls complete in arbitrary order.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Iterator

from citesearch.core.errors import ConfigurationError, PipelineError
from citesearch.core.request_store import RequestStore
from citesearch.llm.provider_config import ModelBackendConfig
from citesearch.llm.service import ModelBackend, build_model_backend
from citesearch.retrieval.assembler import CitationRecord, assemble
from citesearch.retrieval.embedding_pipeline import FAILURE_POLICIES, ChunkingEmbeddingPipeline
from citesearch.retrieval.fetch_coordinator import (
    FetchCoordinator,
    ScraperProtocol,
    SearchProviderProtocol,
)
from citesearch.retrieval.vector_index import METRICS, VectorIndex
from citesearch.retrieval.web.web_module import PageScraper, WebConfig, WebSearchClient


logger = logging.getLogger(__name__)


# =========================================================
# CONFIGURATION
# =========================================================

@dataclass(frozen=True)
class PipelineConfig:
    """Run-shape settings for `SearchPipeline`.

    Relevant environment variables:
        - `SEARCH_RESULT_LIMIT`, `RETRIEVAL_TOP_K`, `CHUNK_SIZE_WORDS`
        - `SCRAPE_MAX_CONCURRENCY`, `SCRAPE_TIMEOUT_SECONDS`
        - `EMBED_MAX_CONCURRENCY`, `EMBED_TIMEOUT_SECONDS`
        - `EMBEDDING_FAILURE_POLICY`, `INDEX_METRIC`, `INDEX_HNSW_THRESHOLD`
        - `LOG_LEVEL`
    """

    result_limit: int = 10
    top_k: int = 10
    chunk_size: int = 1000
    scrape_max_concurrency: int = 0
    scrape_timeout_seconds: float = 30.0
    embed_max_concurrency: int = 8
    embed_timeout_seconds: float = 60.0
    embedding_failure_policy: str = "skip"
    index_metric: str = "euclidean"
    hnsw_threshold: int = 2048
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        try:
            config = cls(
                result_limit=int(os.getenv("SEARCH_RESULT_LIMIT", "10")),
                top_k=int(os.getenv("RETRIEVAL_TOP_K", "10")),
                chunk_size=int(os.getenv("CHUNK_SIZE_WORDS", "1000")),
                scrape_max_concurrency=int(os.getenv("SCRAPE_MAX_CONCURRENCY", "0")),
                scrape_timeout_seconds=float(os.getenv("SCRAPE_TIMEOUT_SECONDS", "30")),
                embed_max_concurrency=int(os.getenv("EMBED_MAX_CONCURRENCY", "8")),
                embed_timeout_seconds=float(os.getenv("EMBED_TIMEOUT_SECONDS", "60")),
                embedding_failure_policy=os.getenv("EMBEDDING_FAILURE_POLICY", "skip").strip().lower(),
                index_metric=os.getenv("INDEX_METRIC", "euclidean").strip().lower(),
                hnsw_threshold=int(os.getenv("INDEX_HNSW_THRESHOLD", "2048")),
                log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            )
        except ValueError as exc:
            raise ConfigurationError(f"invalid numeric setting: {exc}") from exc
        return config.validate()

    def validate(self) -> "PipelineConfig":
        """Reject settings no run could honor.

        Raises:
            ConfigurationError: Non-positive limits or unknown policy/metric.
        """
        if self.result_limit <= 0:
            raise ConfigurationError("SEARCH_RESULT_LIMIT must be positive")
        if self.top_k <= 0:
            raise ConfigurationError("RETRIEVAL_TOP_K must be positive")
        if self.chunk_size <= 0:
            raise ConfigurationError("CHUNK_SIZE_WORDS must be positive")
        if self.embedding_failure_policy not in FAILURE_POLICIES:
            raise ConfigurationError(
                f"EMBEDDING_FAILURE_POLICY must be one of {FAILURE_POLICIES}"
            )
        if self.index_metric not in METRICS:
            raise ConfigurationError(f"INDEX_METRIC must be one of {METRICS}")
        return self


@dataclass
class RunReport:
    """Per-run counts and phase timings (seconds)."""

    query: str
    sources_found: int = 0
    sources_with_content: int = 0
    scrape_failures: int = 0
    chunks_embedded: int = 0
    chunks_skipped: int = 0
    records_returned: int = 0
    timings: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "sources_found": self.sources_found,
            "sources_with_content": self.sources_with_content,
            "scrape_failures": self.scrape_failures,
            "chunks_embedded": self.chunks_embedded,
            "chunks_skipped": self.chunks_skipped,
            "records_returned": self.records_returned,
            "timings": dict(self.timings),
        }


class _PhaseTimer:
    """Context manager recording elapsed time and logging fatal phase errors."""

    def __init__(self, report: RunReport, phase: str) -> None:
        self.report = report
        self.phase = phase
        self._started = 0.0

    def __enter__(self) -> "_PhaseTimer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.report.timings[self.phase] = round(time.perf_counter() - self._started, 4)
        if exc is not None and isinstance(exc, PipelineError):
            logger.error(
                "Pipeline failed during %s phase: %s",
                self.phase,
                exc,
                exc_info=(exc_type, exc, tb),
            )
        return False


# =========================================================
# PIPELINE
# =========================================================

class SearchPipeline:
    """Search -> scrape -> embed -> index -> retrieve, one request per call.

    Args:
        config: Run-shape settings.
        search_client: Search provider (`async search(query, limit)`).
        scraper: Page scraper (`async fetch_and_extract(url)`).
        backend: Model backend used for embeddings and answers.

    Every call builds its own store and index; nothing is shared between
    requests, so one instance can serve concurrent calls.
    """

    def __init__(
        self,
        config: PipelineConfig,
        search_client: SearchProviderProtocol,
        scraper: ScraperProtocol,
        backend: ModelBackend,
    ) -> None:
        self.config = config
        self.search_client = search_client
        self.scraper = scraper
        self.backend = backend

    async def arun(
        self,
        query: str,
        result_limit: int | None = None,
        top_k: int | None = None,
    ) -> list[CitationRecord]:
        """Run the pipeline and return citation records, nearest first.

        Args:
            query: User query; must not be blank.
            result_limit: Number of search results; defaults to config.
            top_k: Number of chunks retrieved; defaults to config.

        Raises:
            ValueError: Blank query or non-positive limits.
            PipelineError: Any fatal phase failure.
        """
        records, _ = await self.arun_with_report(query, result_limit=result_limit, top_k=top_k)
        return records

    async def arun_with_report(
        self,
        query: str,
        result_limit: int | None = None,
        top_k: int | None = None,
    ) -> tuple[list[CitationRecord], RunReport]:
        """Same as `arun`, also returning the `RunReport` for the run."""
        if not query or not query.strip():
            raise ValueError("query must not be blank")

        limit = self.config.result_limit if result_limit is None else result_limit
        k = self.config.top_k if top_k is None else top_k
        if limit <= 0 or k <= 0:
            raise ValueError("result_limit and top_k must be positive")

        report = RunReport(query=query)
        logger.info("Pipeline start: query=%r limit=%d top_k=%d", query, limit, k)

        with _PhaseTimer(report, "probe"):
            query_vector = await asyncio.to_thread(self.backend.embed, query)

        store = RequestStore(query)
        index = VectorIndex(
            dimension=len(query_vector),
            metric=self.config.index_metric,
            hnsw_threshold=self.config.hnsw_threshold,
        )
        coordinator = FetchCoordinator(
            store,
            self.search_client,
            self.scraper,
            max_concurrency=self.config.scrape_max_concurrency,
            timeout_seconds=self.config.scrape_timeout_seconds,
        )

        with _PhaseTimer(report, "search"):
            await coordinator.collect_sources(query, limit)
        report.sources_found = len(store)

        if not report.sources_found:
            logger.info("No sources found for query=%r; nothing to index", query)
            store.seal()
            return [], report

        with _PhaseTimer(report, "scrape"):
            scrape_report = await coordinator.scrape_all()
        report.sources_with_content = scrape_report.succeeded
        report.scrape_failures = scrape_report.failed

        embedder = ChunkingEmbeddingPipeline(
            chunk_size=self.config.chunk_size,
            max_concurrency=self.config.embed_max_concurrency,
            timeout_seconds=self.config.embed_timeout_seconds,
            failure_policy=self.config.embedding_failure_policy,
        )
        with _PhaseTimer(report, "embed"):
            embed_report = await embedder.run(store, self.backend, index)
        report.chunks_embedded = embed_report.embedded
        report.chunks_skipped = embed_report.skipped

        with _PhaseTimer(report, "retrieve"):
            index.build()
            ids = index.search(query_vector, k)
            records = assemble(store, ids)
            store.seal()

        report.records_returned = len(records)
        logger.info(
            "Pipeline done: %d sources, %d with content, %d chunks, %d records",
            report.sources_found,
            report.sources_with_content,
            report.chunks_embedded,
            report.records_returned,
        )
        return records, report

    def run(
        self,
        query: str,
        result_limit: int | None = None,
        top_k: int | None = None,
    ) -> list[CitationRecord]:
        """Blocking wrapper around `arun` for callers without an event loop."""
        return asyncio.run(self.arun(query, result_limit=result_limit, top_k=top_k))

    def stream_answer(self, query: str, records: list[CitationRecord]) -> Iterator[str]:
        """Stream a cited answer over already assembled `records`.

        Returns:
            A fresh generator of answer fragments.

        Raises:
            AnswerError: From inside iteration on backend failure.
        """
        return self.backend.stream_answer(query, records)


# =========================================================
# CONSTRUCTION
# =========================================================

def build_pipeline(
    config: PipelineConfig | None = None,
    web_config: WebConfig | None = None,
    model_config: ModelBackendConfig | None = None,
) -> SearchPipeline:
    """Build a `SearchPipeline` from explicit configs or the environment.

    Raises:
        ConfigurationError: Missing or invalid settings.
    """
    config = config or PipelineConfig.from_env()
    web_config = web_config or WebConfig.from_env()
    model_config = model_config or ModelBackendConfig.from_env()

    return SearchPipeline(
        config=config,
        search_client=WebSearchClient(web_config),
        scraper=PageScraper(web_config),
        backend=build_model_backend(model_config),
    )


def run_pipeline(query: str, result_limit: int | None = None) -> list[CitationRecord]:
    """Build a pipeline from the environment and run one query.

    Args:
        query: User query.
        result_limit: Number of search results; defaults to `SEARCH_RESULT_LIMIT`.

    Returns:
        Citation records, nearest first.
    """
    return build_pipeline().run(query, result_limit=result_limit)
