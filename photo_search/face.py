"""Face clustering and person auto-matching over stored face descriptors.

Descriptors come from an external detector (128- or 512-dim). Clustering is
single-linkage: two faces share a cluster when a chain of pairs above the
threshold connects them. Auto-matching compares each unmatched face against
the reference faces of every known person and either assigns it, records a
suggestion, or leaves it for clustering into a new person.
"""

import logging
import threading
from dataclasses import dataclass, field

import numpy as np

from errors import ClusteringBusy
from similarity import normalize, normalize_rows
from store import FaceDescriptor, LibraryStore, Person

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_THRESHOLD = 0.7
DEFAULT_AUTO_THRESHOLD = 0.85
DEFAULT_SUGGEST_THRESHOLD = 0.6
MIN_CLUSTER_SIZE = 2
_SIM_BLOCK = 1024  # rows per block when computing pairwise similarity


@dataclass
class Cluster:
    face_ids: list[str]
    photo_ids: list[str]
    confidence: float  # mean similarity of members to the cluster centroid

    @property
    def size(self) -> int:
        return len(self.face_ids)

    @property
    def promotable(self) -> bool:
        return self.size >= MIN_CLUSTER_SIZE

    def as_dict(self) -> dict:
        return {
            "face_ids": self.face_ids,
            "photo_ids": sorted(set(self.photo_ids)),
            "size": self.size,
            "confidence": round(self.confidence, 4),
        }


@dataclass
class MatchReport:
    matched: list[dict] = field(default_factory=list)
    suggestions: list[dict] = field(default_factory=list)
    clusters: list[Cluster] = field(default_factory=list)
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "matched": self.matched,
            "suggestions": self.suggestions,
            "clusters": [c.as_dict() for c in self.clusters],
            "skipped": self.skipped,
        }


class _DisjointSet:
    def __init__(self, n: int):
        self.parent = list(range(n))

    def find(self, x: int) -> int:
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        # Smaller root wins so group order follows input order.
        if ra < rb:
            self.parent[rb] = ra
        else:
            self.parent[ra] = rb


def _usable(descriptors: list[FaceDescriptor]) -> tuple[list[FaceDescriptor], np.ndarray | None, int]:
    """Keep descriptors that have a vector matching the first seen dimension.

    Returns (kept, normalized matrix, skipped count).
    """
    kept, vectors, skipped = [], [], 0
    dim = None
    for d in descriptors:
        if d.descriptor is None:
            skipped += 1
            continue
        v = np.asarray(d.descriptor, dtype=np.float32).reshape(-1)
        if dim is None:
            dim = v.shape[0]
        if v.shape[0] != dim:
            logger.warning(
                "Skipping face %s: descriptor dimension %d, expected %d",
                d.face_id, v.shape[0], dim,
            )
            skipped += 1
            continue
        kept.append(d)
        vectors.append(v)
    if not kept:
        return [], None, skipped
    return kept, normalize_rows(np.vstack(vectors)), skipped


def single_linkage(matrix: np.ndarray, threshold: float) -> list[list[int]]:
    """Group row indices of a normalized matrix by single-link cosine > threshold.

    Groups are ordered by their first member; members keep input order.
    """
    n = len(matrix)
    ds = _DisjointSet(n)
    for start in range(0, n, _SIM_BLOCK):
        block = matrix[start : start + _SIM_BLOCK] @ matrix.T
        rows, cols = np.nonzero(block > threshold)
        for r, c in zip(rows.tolist(), cols.tolist()):
            i = start + r
            if c > i:
                ds.union(i, c)

    groups: dict[int, list[int]] = {}
    for i in range(n):
        groups.setdefault(ds.find(i), []).append(i)
    return sorted(groups.values(), key=lambda g: g[0])


class FaceClusterer:
    def __init__(
        self,
        store: LibraryStore,
        cluster_threshold: float = DEFAULT_CLUSTER_THRESHOLD,
        auto_threshold: float = DEFAULT_AUTO_THRESHOLD,
        suggest_threshold: float = DEFAULT_SUGGEST_THRESHOLD,
        lock_timeout: float = 10.0,
    ):
        self._store = store
        self.cluster_threshold = cluster_threshold
        self.auto_threshold = auto_threshold
        self.suggest_threshold = suggest_threshold
        self._lock_timeout = lock_timeout
        self._pass_lock = threading.Lock()

    def _acquire(self) -> None:
        if not self._pass_lock.acquire(timeout=self._lock_timeout):
            raise ClusteringBusy("A clustering pass is already running")

    # -- clustering --

    def cluster(
        self, descriptors: list[FaceDescriptor] | None = None, threshold: float | None = None
    ) -> list[Cluster]:
        """Single-linkage clustering. Defaults to every unmatched face in the store."""
        self._acquire()
        try:
            if descriptors is None:
                descriptors = self._store.get_faces(unmatched_only=True)
            if threshold is None:
                threshold = self.cluster_threshold
            clusters, _ = self._cluster(descriptors, threshold)
            return clusters
        finally:
            self._pass_lock.release()

    def _cluster(
        self, descriptors: list[FaceDescriptor], threshold: float
    ) -> tuple[list[Cluster], int]:
        kept, matrix, skipped = _usable(descriptors)
        if matrix is None:
            return [], skipped

        clusters = []
        for group in single_linkage(matrix, threshold):
            members = matrix[group]
            centroid = normalize(members.mean(axis=0))
            clusters.append(
                Cluster(
                    face_ids=[kept[i].face_id for i in group],
                    photo_ids=[kept[i].photo_id for i in group],
                    confidence=float(np.mean(members @ centroid)),
                )
            )
        logger.info(
            "Clustered %d faces into %d groups (%d promotable, %d skipped)",
            len(kept), len(clusters), sum(c.promotable for c in clusters), skipped,
        )
        return clusters, skipped

    # -- auto-match --

    def _references(self, dim: int) -> tuple[list[str], list[np.ndarray]]:
        """Per-person normalized reference matrices for faces of dimension ``dim``."""
        person_ids, refs = [], []
        for person in self._store.list_persons():
            vectors = [
                np.asarray(f.descriptor, dtype=np.float32).reshape(-1)
                for f in self._store.get_person_faces(person.person_id)
                if f.descriptor is not None
            ]
            vectors = [v for v in vectors if v.shape[0] == dim]
            if vectors:
                person_ids.append(person.person_id)
                refs.append(normalize_rows(np.vstack(vectors)))
        return person_ids, refs

    def auto_match(
        self,
        descriptors: list[FaceDescriptor] | None = None,
        auto_threshold: float | None = None,
        suggest_threshold: float | None = None,
        cluster_threshold: float | None = None,
    ) -> MatchReport:
        """Match unmatched faces against known persons.

        Similarity >= auto_threshold assigns the face; [suggest, auto) records
        a suggestion; anything lower is clustered as a candidate new person.
        """
        auto_t = self.auto_threshold if auto_threshold is None else auto_threshold
        suggest_t = self.suggest_threshold if suggest_threshold is None else suggest_threshold
        if suggest_t > auto_t:
            raise ValueError("suggest_threshold must not exceed auto_threshold")

        self._acquire()
        try:
            if descriptors is None:
                descriptors = self._store.get_faces(unmatched_only=True)
            pending = [d for d in descriptors if d.person_id is None]
            kept, matrix, skipped = _usable(pending)
            report = MatchReport(skipped=skipped)
            if matrix is None:
                return report

            person_ids, refs = self._references(matrix.shape[1])
            leftovers: list[FaceDescriptor] = []
            for face, vec in zip(kept, matrix):
                best_pid, best_sim = None, -1.0
                for pid, ref in zip(person_ids, refs):
                    sim = float(np.max(ref @ vec))
                    if sim > best_sim:
                        best_pid, best_sim = pid, sim

                if best_pid is not None and best_sim >= auto_t:
                    self._store.set_face_person(face.face_id, best_pid)
                    report.matched.append(
                        {"face_id": face.face_id, "person_id": best_pid, "similarity": round(best_sim, 4)}
                    )
                elif best_pid is not None and best_sim >= suggest_t:
                    self._store.add_suggestion(face.face_id, best_pid, best_sim)
                    self._store.mark_processed(face.face_id)
                    report.suggestions.append(
                        {"face_id": face.face_id, "person_id": best_pid, "similarity": round(best_sim, 4)}
                    )
                else:
                    leftovers.append(face)

            if cluster_threshold is None:
                cluster_threshold = self.cluster_threshold
            clusters, _ = self._cluster(leftovers, cluster_threshold)
            report.clusters = [c for c in clusters if c.promotable]
            logger.info(
                "Auto-match: %d assigned, %d suggested, %d new-person clusters",
                len(report.matched), len(report.suggestions), len(report.clusters),
            )
            return report
        finally:
            self._pass_lock.release()

    # -- manual overrides --

    def _require_person(self, person_id: str) -> Person:
        person = self._store.get_person(person_id)
        if person is None:
            raise KeyError(person_id)
        return person

    def assign_to_person(self, face_ids: list[str], person_id: str) -> dict:
        """Manually assign faces to a person. Re-assigning is a no-op."""
        self._require_person(person_id)
        assigned = 0
        for face_id in face_ids:
            face = self._store.get_face(face_id)
            if face is None:
                raise KeyError(face_id)
            if face.person_id == person_id and face.manual:
                continue
            self._store.set_face_person(face_id, person_id, manual=True)
            assigned += 1
        return {"assigned": assigned, "person_id": person_id}

    def unmatch_face(self, face_id: str) -> bool:
        """Detach a face from its person. Returns False if it was already unmatched."""
        face = self._store.get_face(face_id)
        if face is None:
            raise KeyError(face_id)
        if face.person_id is None:
            return False
        self._store.set_face_person(face_id, None, manual=False, processed=False)
        return True

    def promote_cluster(self, cluster: Cluster, name: str, display_name: str | None = None) -> Person:
        """Create a person from a promotable cluster and assign its faces."""
        if not cluster.promotable:
            raise ValueError(f"Cluster of {cluster.size} face(s) is too small to promote")
        person = self._store.create_person(name, display_name)
        for face_id in cluster.face_ids:
            self._store.set_face_person(face_id, person.person_id, manual=True)
        return self._store.get_person(person.person_id)

    def merge_persons(self, source_id: str, target_id: str) -> dict:
        if source_id == target_id:
            raise ValueError("Cannot merge a person into itself")
        self._require_person(source_id)
        self._require_person(target_id)
        merged = self._store.reassign_faces(source_id, target_id)
        self._store.delete_person(source_id)
        logger.info("Merged person %s into %s (%d faces)", source_id, target_id, merged)
        return {"merged": merged, "person_id": target_id}

    # -- queries --

    def find_similar_faces(
        self, face_id: str, min_similarity: float = DEFAULT_SUGGEST_THRESHOLD, limit: int = 20
    ) -> list[dict]:
        face = self._store.get_face(face_id)
        if face is None:
            raise KeyError(face_id)
        if face.descriptor is None:
            return []
        query = normalize(face.descriptor)
        others = [
            f for f in self._store.get_faces()
            if f.face_id != face_id and f.descriptor is not None
            and len(f.descriptor) == len(query)
        ]
        if not others:
            return []
        scores = normalize_rows(np.vstack([f.descriptor for f in others])) @ query
        hits = [
            {"face_id": f.face_id, "photo_id": f.photo_id, "similarity": round(float(s), 4)}
            for f, s in zip(others, scores)
            if s >= min_similarity
        ]
        hits.sort(key=lambda h: (-h["similarity"], h["face_id"]))
        return hits[:limit]

    def stats(self) -> dict:
        faces = self._store.get_faces()
        matched = sum(1 for f in faces if f.person_id is not None)
        return {
            "total_faces": len(faces),
            "matched_faces": matched,
            "unmatched_faces": len(faces) - matched,
            "match_rate": round(matched / len(faces), 4) if faces else 0.0,
            "persons": len(self._store.list_persons()),
            "pending_suggestions": len(self._store.get_suggestions()),
        }
