"""Citation-record assembly for the answer stage.

Architectural role:
    Maps nearest-first chunk ids from `VectorIndex.search` back to text and
    source provenance and numbers them for inline citation.

Ranking:
    No re-ranking. Output order equals search order; citation numbers are
    1-based positions. Several records may cite the same source.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from citesearch.core.request_store import RequestStore


@dataclass(frozen=True)
class CitationRecord:
    """One retrieved chunk ready for citation.

    Attributes:
        number: 1-based citation number (position in the result list).
        title: Source title.
        url: Source URL.
        text: Chunk text.
    """

    number: int
    title: str
    url: str
    text: str

    def to_dict(self) -> dict:
        return asdict(self)


def assemble(store: RequestStore, ids: list[int]) -> list[CitationRecord]:
    """Build ordered citation records for `ids`.

    Args:
        store: Request store holding chunk linkage.
        ids: Chunk ids, nearest first.

    Returns:
        Citation records numbered from 1 in input order. Unknown ids are
        skipped and do not consume a number.

    Raises:
        LinkageError: Propagated when a chunk points at a missing source.
    """
    return [
        CitationRecord(
            number=position,
            title=chunk.source_title,
            url=chunk.source_url,
            text=chunk.text,
        )
        for position, chunk in enumerate(store.resolve_chunks(ids), start=1)
    ]
