"""Chunking and concurrent embedding of scraped source content.

Architectural role:
    Turns the content held in `RequestStore` into retrievable units: each
    source is split into word-bounded chunks, every chunk is embedded
    concurrently, assigned a fresh chunk id, linked to its source in the store
    and inserted into the `VectorIndex`.

Ordering per chunk:
    1. embed (external call, runs on a per-run thread pool, may be slow)
    2. take the next id from the shared counter
    3. write chunk text + source linkage to the store
    4. insert `(chunk_id, embedding)` into the index
    Step 3 completes before step 4, so every id the index can ever return
    resolves to a chunk.

Failure policy:
    - `skip` (default): a failed or timed-out embedding is logged and that
      chunk is dropped; the run continues, matching scrape-stage tolerance.
    - `abort`: the first embedding failure cancels outstanding units and is
      re-raised.
    Index and linkage errors are programming errors and always propagate.

Concurrency:
    At most `max_concurrency` embedding calls run at once. A call that times
    out keeps its slot until its worker thread returns, so abandoned calls
    never push the thread count past the cap.

Staleness:
    Sources are read from one snapshot taken when `run` starts.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Protocol

from citesearch.core.errors import EmbeddingError
from citesearch.core.request_store import RequestStore
from citesearch.retrieval.vector_index import VectorIndex


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000
FAILURE_POLICIES = ("skip", "abort")


class EmbedderProtocol(Protocol):
    """Blocking embedding capability consumed by the pipeline."""

    def embed(self, text: str) -> list[float]:
        """Return a fixed-dimension vector for `text`."""
        ...


def chunk_words(content: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """Split text on whitespace into non-overlapping word-count-bounded chunks.

    Args:
        content: Source text.
        chunk_size: Maximum words per chunk.

    Returns:
        Chunks joined with single spaces; the last one may be shorter.
        Blank content yields an empty list.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    words = content.split()
    return [
        " ".join(words[start:start + chunk_size])
        for start in range(0, len(words), chunk_size)
    ]


class ChunkIdCounter:
    """Monotonic id source shared by all embed units of one run."""

    def __init__(self, start: int = 1) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(start)

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


@dataclass
class EmbeddingReport:
    """Counts produced by one embedding phase."""

    sources: int = 0
    chunks: int = 0
    embedded: int = 0
    skipped: int = 0


class ChunkingEmbeddingPipeline:
    """Fan-out embedder writing chunk linkage and index entries.

    Args:
        chunk_size: Words per chunk.
        max_concurrency: Cap on simultaneous embedding calls.
        timeout_seconds: Per-call embedding timeout; `0` disables it.
        failure_policy: `skip` or `abort` (see module docstring).
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_concurrency: int = 8,
        timeout_seconds: float = 60.0,
        failure_policy: str = "skip",
    ) -> None:
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"failure_policy must be one of {FAILURE_POLICIES}")
        self.chunk_size = chunk_size
        self.max_concurrency = max(1, max_concurrency)
        self.timeout_seconds = timeout_seconds
        self.failure_policy = failure_policy

    async def run(
        self,
        store: RequestStore,
        embedder: EmbedderProtocol,
        index: VectorIndex,
    ) -> EmbeddingReport:
        """Chunk every source with content, embed, link and index each chunk.

        Returns:
            `EmbeddingReport` with chunk and skip counts.

        Raises:
            EmbeddingError: Under the `abort` policy.
            IndexStateError / LinkageError: Always propagated.
        """
        sources = [record for record in store.get_sources() if record.content and record.content.strip()]
        report = EmbeddingReport(sources=len(sources))

        units: list[tuple[str, str]] = []
        for record in sources:
            chunks = chunk_words(record.content or "", self.chunk_size)
            logger.info("Chunked content into %d chunks for url: %s", len(chunks), record.url)
            units.extend((chunk, record.source_id) for chunk in chunks)

        report.chunks = len(units)
        if not units:
            return report

        semaphore = asyncio.Semaphore(self.max_concurrency)
        counter = ChunkIdCounter()
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_concurrency,
            thread_name_prefix="embed",
        )

        tasks = [
            asyncio.create_task(
                self._embed_unit(text, source_id, store, embedder, index, semaphore, counter, executor)
            )
            for text, source_id in units
        ]

        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        report.embedded = sum(1 for ok in outcomes if ok)
        report.skipped = report.chunks - report.embedded
        logger.info(
            "Embedded %d/%d chunks from %d sources (%d skipped)",
            report.embedded,
            report.chunks,
            report.sources,
            report.skipped,
        )
        return report

    async def _embed_unit(
        self,
        text: str,
        source_id: str,
        store: RequestStore,
        embedder: EmbedderProtocol,
        index: VectorIndex,
        semaphore: asyncio.Semaphore,
        counter: ChunkIdCounter,
        executor: concurrent.futures.Executor,
    ) -> bool:
        try:
            embedding = await self._embed(embedder, text, semaphore, executor)
        except EmbeddingError as exc:
            if self.failure_policy == "abort":
                raise
            logger.warning("Skipping chunk of source %s: %s", source_id[:12], exc)
            return False

        chunk_id = counter.next_id()
        store.assign_chunk(chunk_id, text, source_id)
        index.insert(embedding, chunk_id)
        return True

    async def _embed(
        self,
        embedder: EmbedderProtocol,
        text: str,
        semaphore: asyncio.Semaphore,
        executor: concurrent.futures.Executor,
    ) -> list[float]:
        await semaphore.acquire()
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(executor, embedder.embed, text)
        except BaseException:
            semaphore.release()
            raise

        # Released when the worker thread returns, not when the waiter gives up.
        def release(done: asyncio.Future) -> None:
            semaphore.release()
            if not done.cancelled():
                done.exception()

        future.add_done_callback(release)

        if self.timeout_seconds and self.timeout_seconds > 0:
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise EmbeddingError(
                    f"timed out after {self.timeout_seconds}s",
                    call="embedder.embed",
                ) from exc
        return await asyncio.shield(future)
