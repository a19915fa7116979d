"""Approximate nearest-neighbour index over photo embeddings.

Two modes:

- exhaustive: a matrix product against every stored vector. Used below
  ``index_size_threshold`` vectors or before ``rebuild()`` has run.
- clustered (IVF): spherical k-means partitions the vectors; a query scores
  the centroids first and scans only the members of the ``num_probes`` closest
  clusters.

Vectors are stored L2-normalized in a preallocated float32 buffer that grows
by doubling. Writers hold a lock and publish an immutable ``_Snapshot``;
readers grab the current snapshot reference and never see a half-applied
write or a partial rebuild.
"""

import logging
import math
import threading
from dataclasses import dataclass

import numpy as np

from errors import IndexCorruption
from similarity import DimensionMismatch, normalize, normalize_rows

logger = logging.getLogger(__name__)

KMEANS_ITERATIONS = 10
INITIAL_CAPACITY = 1024


@dataclass(frozen=True)
class _Snapshot:
    ids: list[str]  # append-only between compactions; only ids[:n] are live
    matrix: np.ndarray  # (n, D) view into the buffer
    n: int
    centroids: np.ndarray | None = None  # (k, D)
    labels: np.ndarray | None = None  # (n,) cluster id per row
    members: tuple[np.ndarray, ...] = ()


class VectorIndex:
    def __init__(
        self,
        dimension: int | None = None,
        index_size_threshold: int = 1000,
        num_probes: int = 3,
        num_clusters: int | None = None,
        seed: int = 0,
    ):
        self._dim = dimension
        self._threshold = index_size_threshold
        self._num_probes = num_probes
        self._num_clusters = num_clusters
        self._seed = seed

        self._lock = threading.Lock()
        self._rows: dict[str, int] = {}
        self._ids: list[str] = []
        self._buffer: np.ndarray | None = None
        self._snapshot = _Snapshot(ids=[], matrix=np.empty((0, dimension or 0), np.float32), n=0)

    # -- introspection --

    @property
    def dimension(self) -> int | None:
        return self._dim

    @property
    def mode(self) -> str:
        snap = self._snapshot
        if snap.centroids is None or snap.n < self._threshold:
            return "exhaustive"
        return "clustered"

    def __len__(self) -> int:
        return self._snapshot.n

    def __contains__(self, photo_id: str) -> bool:
        with self._lock:
            return photo_id in self._rows

    def get_vector(self, photo_id: str) -> np.ndarray | None:
        """Return the stored (normalized) vector, or None."""
        with self._lock:
            row = self._rows.get(photo_id)
            if row is None:
                return None
            return self._snapshot.matrix[row].copy()

    def stats(self) -> dict:
        snap = self._snapshot
        return {
            "count": snap.n,
            "dimension": self._dim,
            "mode": self.mode,
            "num_clusters": 0 if snap.centroids is None else len(snap.centroids),
            "capacity": 0 if self._buffer is None else len(self._buffer),
        }

    # -- writes --

    def _coerce(self, vector) -> np.ndarray:
        v = np.asarray(vector, dtype=np.float32).reshape(-1)
        if self._dim is None:
            self._dim = v.shape[0]
        elif v.shape[0] != self._dim:
            raise DimensionMismatch(self._dim, v.shape[0])
        if not np.all(np.isfinite(v)):
            raise ValueError("Vector contains non-finite values")
        return normalize(v)

    def _ensure_capacity(self, needed: int) -> None:
        if self._buffer is None:
            capacity = max(INITIAL_CAPACITY, needed)
            self._buffer = np.empty((capacity, self._dim), dtype=np.float32)
            return
        capacity = len(self._buffer)
        if needed <= capacity:
            return
        while capacity < needed:
            capacity *= 2
        new_buf = np.empty((capacity, self._dim), dtype=np.float32)
        n = self._snapshot.n
        new_buf[:n] = self._buffer[:n]
        self._buffer = new_buf

    def _nearest_centroid(self, snap: _Snapshot, v: np.ndarray) -> int:
        return int(np.argmax(snap.centroids @ v))

    def add(self, photo_id: str, vector) -> None:
        """Insert or replace a vector.

        When a clustered index exists the vector is assigned to its nearest
        centroid; centroids are not recomputed until ``rebuild()``.
        """
        with self._lock:
            v = self._coerce(vector)
            snap = self._snapshot
            row = self._rows.get(photo_id)

            if row is None:
                row = snap.n
                self._ensure_capacity(row + 1)
                self._buffer[row] = v
                self._ids.append(photo_id)
                self._rows[photo_id] = row
                n = row + 1
            else:
                # Replace: copy so readers holding the old view keep old data.
                new_buf = self._buffer.copy()
                new_buf[row] = v
                self._buffer = new_buf
                n = snap.n

            centroids, labels, members = snap.centroids, snap.labels, snap.members
            if centroids is not None:
                c = self._nearest_centroid(snap, v)
                members = list(members)
                if row < snap.n:
                    old = int(labels[row])
                    members[old] = members[old][members[old] != row]
                    labels = labels.copy()
                    labels[row] = c
                else:
                    labels = np.append(labels, c)
                members[c] = np.append(members[c], row)
                members = tuple(members)

            self._snapshot = _Snapshot(
                ids=self._ids,
                matrix=self._buffer[:n],
                n=n,
                centroids=centroids,
                labels=labels,
                members=members,
            )

    def remove(self, photo_id: str) -> bool:
        with self._lock:
            row = self._rows.get(photo_id)
            if row is None:
                return False
            snap = self._snapshot
            keep = np.ones(snap.n, dtype=bool)
            keep[row] = False

            ids = [pid for i, pid in enumerate(self._ids[: snap.n]) if i != row]
            buf = np.empty_like(self._buffer)
            buf[: snap.n - 1] = snap.matrix[keep]
            self._buffer = buf
            self._ids = ids
            self._rows = {pid: i for i, pid in enumerate(ids)}
            n = snap.n - 1

            labels, members = None, ()
            if snap.centroids is not None:
                labels = snap.labels[keep]
                members = _members_from_labels(labels, len(snap.centroids))

            self._snapshot = _Snapshot(
                ids=self._ids,
                matrix=self._buffer[:n],
                n=n,
                centroids=snap.centroids,
                labels=labels,
                members=members,
            )
            return True

    def load(self, rows) -> int:
        """Bulk-load ``(photo_id, vector_or_blob)`` pairs.

        Undecodable, wrongly sized, or non-finite vectors are logged and
        skipped. Returns the number of vectors loaded.
        """
        loaded = skipped = 0
        for photo_id, raw in rows:
            try:
                v = self._decode(photo_id, raw)
            except IndexCorruption as e:
                logger.warning("Skipping corrupt embedding: %s", e)
                skipped += 1
                continue
            self.add(photo_id, v)
            loaded += 1
        logger.info("Loaded %d vectors into index (%d skipped)", loaded, skipped)
        return loaded

    def _decode(self, photo_id: str, raw) -> np.ndarray:
        try:
            if isinstance(raw, (bytes, bytearray, memoryview)):
                v = np.frombuffer(bytes(raw), dtype=np.float32)
            else:
                v = np.asarray(raw, dtype=np.float32).reshape(-1)
        except (ValueError, TypeError) as e:
            raise IndexCorruption(f"{photo_id}: {e}") from e
        if v.size == 0:
            raise IndexCorruption(f"{photo_id}: empty vector")
        if self._dim is not None and v.size != self._dim:
            raise IndexCorruption(f"{photo_id}: dimension {v.size}, expected {self._dim}")
        if not np.all(np.isfinite(v)):
            raise IndexCorruption(f"{photo_id}: non-finite values")
        if self._dim is None:
            self._dim = int(v.size)
        return v

    def rebuild(self) -> None:
        """Run spherical k-means over all stored vectors and publish the clusters."""
        with self._lock:
            snap = self._snapshot
            n = snap.n
            if n == 0:
                self._snapshot = _Snapshot(ids=self._ids, matrix=snap.matrix, n=0)
                return
            k = self._num_clusters or round(math.sqrt(n))
            k = max(1, min(k, n))
            centroids, labels = _spherical_kmeans(snap.matrix, k, self._seed)
            self._snapshot = _Snapshot(
                ids=self._ids,
                matrix=snap.matrix,
                n=n,
                centroids=centroids,
                labels=labels,
                members=_members_from_labels(labels, k),
            )
            logger.info("Rebuilt vector index: %d vectors, %d clusters", n, k)

    # -- reads --

    def search(
        self, query, limit: int = 20, num_probes: int | None = None
    ) -> list[tuple[str, float]]:
        """Return ``(photo_id, cosine)`` ranked by score descending, ties by photo_id."""
        snap = self._snapshot
        q = np.asarray(query, dtype=np.float32).reshape(-1)
        if self._dim is not None and q.shape[0] != self._dim:
            raise DimensionMismatch(self._dim, q.shape[0])
        if snap.n == 0 or limit <= 0:
            return []
        q = normalize(q)

        if snap.centroids is None or snap.n < self._threshold:
            rows = None
            scores = snap.matrix @ q
        else:
            probes = num_probes or self._num_probes
            order = np.argsort(-(snap.centroids @ q), kind="stable")[:probes]
            parts = [snap.members[c] for c in order if len(snap.members[c])]
            if not parts:
                return []
            rows = np.concatenate(parts)
            scores = snap.matrix[rows] @ q

        scores = np.clip(scores, -1.0, 1.0)
        if len(scores) > limit:
            # Everything tied with the limit-th score survives so ties stay deterministic.
            kth = np.partition(scores, len(scores) - limit)[len(scores) - limit]
            picked = np.flatnonzero(scores >= kth)
        else:
            picked = np.arange(len(scores))

        hits = []
        for i in picked:
            row = int(i) if rows is None else int(rows[i])
            hits.append((snap.ids[row], float(scores[i])))
        hits.sort(key=lambda x: (-x[1], x[0]))
        return hits[:limit]


def _members_from_labels(labels: np.ndarray, k: int) -> tuple[np.ndarray, ...]:
    return tuple(np.flatnonzero(labels == c) for c in range(k))


def _spherical_kmeans(
    matrix: np.ndarray, k: int, seed: int
) -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    n = len(matrix)
    centroids = matrix[rng.choice(n, size=k, replace=False)].copy()

    labels = np.zeros(n, dtype=np.int64)
    for _ in range(KMEANS_ITERATIONS):
        sims = matrix @ centroids.T
        labels = np.argmax(sims, axis=1)
        best = sims[np.arange(n), labels]
        for c in range(k):
            mask = labels == c
            if mask.any():
                centroids[c] = matrix[mask].sum(axis=0)
            else:
                # Empty cluster: re-seed from the worst-served vector.
                worst = int(np.argmin(best))
                centroids[c] = matrix[worst]
                best[worst] = np.inf
        centroids = normalize_rows(centroids)

    labels = np.argmax(matrix @ centroids.T, axis=1)
    return centroids, labels
