"""Per-query aggregate of sources, chunk text and chunk provenance.

Architectural role:
    The only cross-task mutable object of a pipeline run. Search, scrape and
    embed units all write here; the retrieval assembler reads from it once at
    the end and the store is then sealed and discarded.

Data model:
    - `sources`: source id -> `SourceRecord`. The source id is the SHA-256 of
      the normalized URL, so repeated URLs collapse to one record.
    - `chunk_text`: chunk id -> chunk text.
    - `chunk_source`: chunk id -> source id.
    Every chunk id present in `chunk_text` also has a `chunk_source` entry
    pointing at a live source record.

Concurrency model:
    One `threading.Lock` guards all three maps. It is held only for the map
    update itself; callers take `get_sources()` snapshots and do network or
    embedding work without holding it.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, replace
from urllib.parse import urlsplit, urlunsplit

from citesearch.core.errors import LinkageError, StoreSealedError


logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": "80", "https": "443"}


def normalize_url(url: str) -> str:
    """Return the canonical form used for source identity.

    Args:
        url: Raw URL as returned by the search provider or scraper.

    Returns:
        Lowercased URL without query string, fragment, default port or
        trailing path slash.

    Edge cases:
        - Query-string variants of one page collapse to the same identity.
        - A bare host keeps no path (`https://a.com/` -> `https://a.com`).
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()

    host, sep, port = netloc.rpartition(":")
    if sep and _DEFAULT_PORTS.get(scheme) == port:
        netloc = host

    path = parts.path.lower().rstrip("/")
    return urlunsplit((scheme, netloc, path, "", ""))


def source_id_for(url: str) -> str:
    """Return the deterministic source id for a URL."""
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SourceRecord:
    """One web page discovered by search.

    Attributes:
        source_id: SHA-256 of the normalized URL.
        title: Title reported by the search provider.
        url: URL as reported by the provider (used for fetching and citing).
        content: Extracted page text, `None` until a scrape succeeds.
    """

    source_id: str
    title: str
    url: str
    content: str | None = None

    @classmethod
    def from_hit(cls, title: str, url: str) -> "SourceRecord":
        return cls(source_id=source_id_for(url), title=title, url=url)


@dataclass(frozen=True)
class ResolvedChunk:
    """Chunk text joined with the provenance of its source."""

    chunk_id: int
    text: str
    source_title: str
    source_url: str


class RequestStore:
    """Lock-protected aggregate for one query invocation.

    Args:
        query: Original user query; stored for the answer stage.
    """

    def __init__(self, query: str) -> None:
        self.query = query
        self._lock = threading.Lock()
        self._sources: dict[str, SourceRecord] = {}
        self._chunk_text: dict[int, str] = {}
        self._chunk_source: dict[int, str] = {}
        self._sealed = False

    # =========================================================
    # MUTATORS
    # =========================================================

    def add_source(self, record: SourceRecord) -> None:
        """Insert or overwrite a source by its id. Idempotent under retries."""
        with self._lock:
            self._check_open()
            self._sources[record.source_id] = record

    def set_source_content(self, url: str, content: str) -> bool:
        """Attach extracted content to an already known source.

        Args:
            url: URL that was scraped.
            content: Extracted text. Last writer wins.

        Returns:
            `True` when a source was updated, `False` when the URL is unknown.

        Edge cases:
            A URL that was not part of the search results is dropped without
            error.
        """
        source_id = source_id_for(url)
        with self._lock:
            self._check_open()
            record = self._sources.get(source_id)
            if record is None:
                updated = False
            else:
                self._sources[source_id] = replace(record, content=content)
                updated = True

        if not updated:
            logger.debug("Dropping content for unknown source url=%s", url)
        return updated

    def assign_chunk(self, chunk_id: int, text: str, source_id: str) -> None:
        """Record chunk text and its source linkage.

        Raises:
            LinkageError: When `chunk_id` was already assigned or `source_id`
                has no live source record.
        """
        with self._lock:
            self._check_open()
            if chunk_id in self._chunk_text:
                raise LinkageError(f"chunk id {chunk_id} already assigned")
            if source_id not in self._sources:
                raise LinkageError(f"chunk id {chunk_id} references unknown source {source_id}")
            self._chunk_text[chunk_id] = text
            self._chunk_source[chunk_id] = source_id

    def seal(self) -> None:
        """Make the store read-only. Further mutations raise `StoreSealedError`."""
        with self._lock:
            self._sealed = True

    # =========================================================
    # READERS
    # =========================================================

    def get_sources(self) -> list[SourceRecord]:
        """Return a snapshot of all source records in insertion order."""
        with self._lock:
            return list(self._sources.values())

    def get_source(self, source_id: str) -> SourceRecord | None:
        with self._lock:
            return self._sources.get(source_id)

    def chunk_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._chunk_text)

    def chunk_source_id(self, chunk_id: int) -> str | None:
        with self._lock:
            return self._chunk_source.get(chunk_id)

    def resolve_chunks(self, ordered_ids: list[int]) -> list[ResolvedChunk]:
        """Map chunk ids to text plus source provenance, preserving order.

        Args:
            ordered_ids: Chunk ids, typically nearest-first from index search.

        Returns:
            One `ResolvedChunk` per known id, in input order.

        Raises:
            LinkageError: When a known chunk points at a missing source.

        Edge cases:
            Unknown ids are skipped.
        """
        resolved: list[ResolvedChunk] = []
        with self._lock:
            for chunk_id in ordered_ids:
                text = self._chunk_text.get(chunk_id)
                if text is None:
                    continue
                source_id = self._chunk_source.get(chunk_id)
                record = self._sources.get(source_id) if source_id is not None else None
                if record is None:
                    raise LinkageError(f"chunk id {chunk_id} resolves to missing source {source_id}")
                resolved.append(
                    ResolvedChunk(
                        chunk_id=chunk_id,
                        text=text,
                        source_title=record.title,
                        source_url=record.url,
                    )
                )
        return resolved

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sources)

    def _check_open(self) -> None:
        if self._sealed:
            raise StoreSealedError("request store is sealed")
