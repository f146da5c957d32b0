"""Search-then-scrape phase driver.

Architectural role:
    Populates `RequestStore` with sources (search phase) and their extracted
    content (scrape phase). Each phase is a full barrier: it returns only after
    every unit has finished. When a unit raises an unexpected exception the
    remaining units are cancelled and awaited before it propagates, so no
    scrape writes to the store after the phase has ended.

Failure model:
    - Search: a single provider call; `ProviderError` aborts the run.
    - Scrape: one unit per source. `FetchError`, `ParseError` and per-unit
      timeouts are logged at warning level and leave that source without
      content. Any other exception is a bug and propagates.

Concurrency:
    Scrape units run under a semaphore sized to the source count unless a
    smaller cap is configured.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from citesearch.core.errors import FetchError, ParseError
from citesearch.core.request_store import RequestStore, SourceRecord
from citesearch.retrieval.web.web_module import SearchHit


logger = logging.getLogger(__name__)


class SearchProviderProtocol(Protocol):
    async def search(self, query: str, limit: int) -> list[SearchHit]: ...


class ScraperProtocol(Protocol):
    async def fetch_and_extract(self, url: str) -> str: ...


@dataclass
class ScrapeReport:
    """Outcome of one scrape phase."""

    attempted: int = 0
    succeeded: int = 0
    failed_urls: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_urls)


class FetchCoordinator:
    """Runs the search and scrape phases against one request store.

    Args:
        store: Aggregate for the current run.
        search_provider: Object implementing `async search(query, limit)`.
        scraper: Object implementing `async fetch_and_extract(url)`.
        max_concurrency: Scrape cap; `0` sizes the pool to the source count.
        timeout_seconds: Per-source scrape timeout; `0` disables it.
    """

    def __init__(
        self,
        store: RequestStore,
        search_provider: SearchProviderProtocol,
        scraper: ScraperProtocol,
        max_concurrency: int = 0,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.search_provider = search_provider
        self.scraper = scraper
        self.max_concurrency = max_concurrency
        self.timeout_seconds = timeout_seconds

    async def collect_sources(self, query: str, limit: int) -> list[SourceRecord]:
        """Run one search call and add every hit to the store.

        Returns:
            Records written, in provider order.

        Raises:
            ProviderError: Propagated from the search provider.
        """
        hits = await self.search_provider.search(query, limit)

        records = [SourceRecord.from_hit(hit.title, hit.url) for hit in hits]
        for record in records:
            self.store.add_source(record)

        logger.info("Collected %d sources for query=%r", len(self.store), query)
        return records

    async def scrape_all(self) -> ScrapeReport:
        """Fetch and extract every known source concurrently.

        Returns:
            `ScrapeReport` with success and failure counts.
        """
        urls = [record.url for record in self.store.get_sources()]
        report = ScrapeReport(attempted=len(urls))
        if not urls:
            return report

        pool_size = len(urls)
        if self.max_concurrency > 0:
            pool_size = min(pool_size, self.max_concurrency)
        semaphore = asyncio.Semaphore(pool_size)

        tasks = [asyncio.create_task(self._scrape_one(url, semaphore)) for url in urls]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for url, ok in zip(urls, outcomes):
            if ok:
                report.succeeded += 1
            else:
                report.failed_urls.append(url)

        logger.info("Scraped %d/%d sources (%d failed)", report.succeeded, report.attempted, report.failed)
        return report

    async def _scrape_one(self, url: str, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                content = await self._fetch(url)
            except (FetchError, ParseError) as exc:
                logger.warning("Failed fetching content for URL: %s, error: %s", url, exc)
                return False

        return self.store.set_source_content(url, content)

    async def _fetch(self, url: str) -> str:
        call = self.scraper.fetch_and_extract(url)
        if self.timeout_seconds and self.timeout_seconds > 0:
            try:
                return await asyncio.wait_for(call, timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise FetchError(f"timed out after {self.timeout_seconds}s", call=f"GET {url}") from exc
        return await call
