"""One-shot approximate-nearest-neighbor index over chunk embeddings.

Architectural role:
    Holds `(chunk_id, embedding)` entries for one pipeline run and answers the
    final similarity query. Entries carry no text; chunk ids are resolved back
    to text and provenance through `RequestStore`.

Index lifecycle:
    `empty` --insert*--> `building` --build()--> `queryable`.
    Inserts are buffered until `build()`, which materializes a FAISS index in
    one pass. There is no way back to `building`: inserting after `build()`,
    building twice, or searching before `build()` raises `IndexStateError`.

FAISS interaction:
    - Below `hnsw_threshold` entries an exact `IndexFlat` is used; at or above
      it an `IndexHNSWFlat` graph is built.
    - `euclidean` metric uses L2 distance (FAISS reports squared L2, which has
      the same ordering).
    - `cosine` metric L2-normalizes vectors and searches by inner product;
      reported distance is `1 - similarity`.
    FAISS positions are insertion positions, so ties in distance are broken by
    insertion order after the FAISS call.

Concurrency:
    FAISS indexes are not safe for concurrent mutation; one lock serializes
    insert, build and search.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum

import faiss
import numpy as np

from citesearch.core.errors import IndexStateError


logger = logging.getLogger(__name__)

METRICS = ("euclidean", "cosine")
HNSW_M = 32
HNSW_EF_SEARCH = 128
HNSW_CANDIDATE_MARGIN = 32


class IndexState(str, Enum):
    EMPTY = "empty"
    BUILDING = "building"
    QUERYABLE = "queryable"


class VectorIndex:
    """Insert-then-build-then-query vector index keyed by chunk id.

    Args:
        dimension: Fixed embedding dimension, probed once before the run.
        metric: `euclidean` or `cosine`.
        hnsw_threshold: Entry count at which HNSW replaces exact search.
    """

    def __init__(self, dimension: int, metric: str = "euclidean", hnsw_threshold: int = 2048) -> None:
        if dimension <= 0:
            raise IndexStateError(f"invalid index dimension {dimension}")
        if metric not in METRICS:
            raise IndexStateError(f"unsupported metric {metric!r}; expected one of {METRICS}")

        self.dimension = dimension
        self.metric = metric
        self.hnsw_threshold = max(1, hnsw_threshold)

        self._lock = threading.Lock()
        self._state = IndexState.EMPTY
        self._pending: list[np.ndarray] = []
        self._ids: list[int] = []
        self._id_set: set[int] = set()
        self._index: faiss.Index | None = None
        self._exact = True

    @property
    def state(self) -> IndexState:
        return self._state

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def insert(self, embedding, chunk_id: int) -> None:
        """Buffer one embedding under `chunk_id`.

        Raises:
            IndexStateError: After `build()`, on dimension mismatch, or when
                `chunk_id` was already inserted.
        """
        vector = self._as_vector(embedding)

        with self._lock:
            if self._state is IndexState.QUERYABLE:
                raise IndexStateError(f"insert of chunk {chunk_id} after build()")
            if chunk_id in self._id_set:
                raise IndexStateError(f"chunk id {chunk_id} inserted twice")

            self._pending.append(vector)
            self._ids.append(chunk_id)
            self._id_set.add(chunk_id)
            self._state = IndexState.BUILDING

        logger.debug("Buffered embedding for chunk %d", chunk_id)

    def build(self) -> None:
        """Materialize the FAISS index and switch to `queryable`.

        Raises:
            IndexStateError: When called more than once.
        """
        with self._lock:
            if self._state is IndexState.QUERYABLE:
                raise IndexStateError("build() called more than once")

            count = len(self._pending)
            if count:
                matrix = np.ascontiguousarray(np.vstack(self._pending), dtype="float32")
            else:
                matrix = np.empty((0, self.dimension), dtype="float32")

            if self.metric == "cosine" and count:
                faiss.normalize_L2(matrix)

            faiss_metric = faiss.METRIC_INNER_PRODUCT if self.metric == "cosine" else faiss.METRIC_L2
            self._exact = count < self.hnsw_threshold

            if self._exact:
                index = faiss.IndexFlat(self.dimension, faiss_metric)
            else:
                index = faiss.IndexHNSWFlat(self.dimension, HNSW_M, faiss_metric)
                index.hnsw.efSearch = HNSW_EF_SEARCH

            if count:
                index.add(matrix)

            self._index = index
            self._pending = []
            self._state = IndexState.QUERYABLE

        logger.info(
            "Built %s index with %d entries (metric=%s)",
            "flat" if self._exact else "hnsw",
            count,
            self.metric,
        )

    def search(self, query_embedding, k: int) -> list[int]:
        """Return up to `k` chunk ids, nearest first."""
        return [chunk_id for chunk_id, _ in self.search_with_distances(query_embedding, k)]

    def search_with_distances(self, query_embedding, k: int) -> list[tuple[int, float]]:
        """Return up to `k` `(chunk_id, distance)` pairs in ascending distance.

        Raises:
            IndexStateError: Before `build()` or on dimension mismatch.

        Edge cases:
            - Returns `min(k, len(index))` pairs.
            - Equal distances are ordered by insertion order.
        """
        query = self._as_vector(query_embedding)

        with self._lock:
            if self._state is not IndexState.QUERYABLE or self._index is None:
                raise IndexStateError("search() before build()")

            total = len(self._ids)
            if k <= 0 or total == 0:
                return []

            if self._exact:
                candidates = total
            else:
                candidates = min(total, k + HNSW_CANDIDATE_MARGIN)

            matrix = np.ascontiguousarray(query.reshape(1, -1), dtype="float32")
            if self.metric == "cosine":
                faiss.normalize_L2(matrix)

            distances, positions = self._index.search(matrix, candidates)

            hits: list[tuple[float, int]] = []
            for raw_distance, position in zip(distances[0], positions[0]):
                if position < 0:
                    continue
                if self.metric == "cosine":
                    distance = 1.0 - float(raw_distance)
                else:
                    distance = float(raw_distance)
                hits.append((distance, int(position)))

            hits.sort()
            return [(self._ids[position], distance) for distance, position in hits[:k]]

    def _as_vector(self, embedding) -> np.ndarray:
        vector = np.asarray(embedding, dtype="float32")
        if vector.ndim != 1 or vector.shape[0] != self.dimension:
            raise IndexStateError(
                f"embedding dimension {vector.shape[-1] if vector.ndim else 0} "
                f"does not match index dimension {self.dimension}"
            )
        return vector
