import sys
import threading
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from similarity import DimensionMismatch
from vector_index import INITIAL_CAPACITY, VectorIndex


def _random_vectors(n: int, dim: int = 16, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.normal(size=(n, dim)).astype(np.float32)


def _brute_force(vectors: np.ndarray, ids: list[str], query: np.ndarray, k: int):
    m = vectors / np.linalg.norm(vectors, axis=1, keepdims=True)
    q = query / np.linalg.norm(query)
    scored = sorted(zip(ids, (m @ q).tolist()), key=lambda x: (-x[1], x[0]))
    return scored[:k]


def _filled(n: int, dim: int = 16, **kwargs) -> tuple[VectorIndex, np.ndarray, list[str]]:
    vectors = _random_vectors(n, dim)
    ids = [f"p{i:04d}" for i in range(n)]
    idx = VectorIndex(**kwargs)
    for pid, v in zip(ids, vectors):
        idx.add(pid, v)
    return idx, vectors, ids


def test_empty_index_returns_nothing():
    assert VectorIndex().search([1.0, 0.0]) == []


def test_exhaustive_matches_brute_force():
    idx, vectors, ids = _filled(200)
    assert idx.mode == "exhaustive"
    query = _random_vectors(1, seed=99)[0]
    got = idx.search(query, limit=10)
    want = _brute_force(vectors, ids, query, 10)
    assert [pid for pid, _ in got] == [pid for pid, _ in want]
    for (_, a), (_, b) in zip(got, want):
        assert a == pytest.approx(b, abs=1e-5)


def test_below_threshold_stays_exhaustive_after_rebuild():
    idx, _, _ = _filled(50, index_size_threshold=1000)
    idx.rebuild()
    assert idx.mode == "exhaustive"


def test_clustered_mode_with_all_probes_matches_brute_force():
    idx, vectors, ids = _filled(400, index_size_threshold=100)
    idx.rebuild()
    assert idx.mode == "clustered"
    k = idx.stats()["num_clusters"]
    assert k == 20  # round(sqrt(400))
    query = _random_vectors(1, seed=7)[0]
    got = idx.search(query, limit=15, num_probes=k)
    want = _brute_force(vectors, ids, query, 15)
    assert [pid for pid, _ in got] == [pid for pid, _ in want]


def test_clustered_search_finds_exact_vector():
    idx, vectors, ids = _filled(400, index_size_threshold=100)
    idx.rebuild()
    # A stored vector's own cluster is always its nearest centroid.
    hits = idx.search(vectors[123], limit=1, num_probes=1)
    assert hits[0][0] == ids[123]
    assert hits[0][1] == pytest.approx(1.0, abs=1e-5)


def test_add_after_rebuild_is_searchable():
    idx, _, _ = _filled(300, index_size_threshold=100)
    idx.rebuild()
    new = _random_vectors(1, seed=1234)[0]
    idx.add("fresh", new)
    assert idx.search(new, limit=1)[0][0] == "fresh"


def test_results_sorted_with_deterministic_ties():
    idx = VectorIndex()
    for pid in ["c", "a", "b"]:
        idx.add(pid, [1.0, 0.0])
    idx.add("d", [0.0, 1.0])
    hits = idx.search([1.0, 0.0], limit=2)
    assert [pid for pid, _ in hits] == ["a", "b"]


def test_replace_and_remove():
    idx = VectorIndex()
    idx.add("a", [1.0, 0.0])
    idx.add("b", [0.0, 1.0])
    idx.add("a", [0.0, 1.0])
    assert len(idx) == 2
    assert idx.search([0.0, 1.0], limit=2)[1][1] == pytest.approx(1.0)
    assert idx.remove("a") is True
    assert idx.remove("a") is False
    assert "a" not in idx
    assert [pid for pid, _ in idx.search([1.0, 1.0])] == ["b"]


def test_dimension_mismatch():
    idx = VectorIndex(dimension=4)
    with pytest.raises(DimensionMismatch):
        idx.add("a", [1.0, 2.0])
    idx.add("a", [1.0, 0.0, 0.0, 0.0])
    with pytest.raises(DimensionMismatch):
        idx.search([1.0, 0.0])


def test_load_skips_corrupt_vectors():
    good = np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32)
    rows = [
        ("ok", good.tobytes()),
        ("truncated", b"\x00\x01"),
        ("wrong-dim", np.ones(3, dtype=np.float32).tobytes()),
        ("nan", np.array([np.nan, 0, 0, 0], dtype=np.float32).tobytes()),
        ("empty", b""),
        ("list", [0.0, 1.0, 0.0, 0.0]),
    ]
    idx = VectorIndex()
    assert idx.load(rows) == 2
    assert "ok" in idx and "list" in idx
    assert "truncated" not in idx


def test_buffer_grows_past_initial_capacity():
    idx, _, _ = _filled(INITIAL_CAPACITY + 5, dim=4)
    assert len(idx) == INITIAL_CAPACITY + 5
    assert idx.stats()["capacity"] == INITIAL_CAPACITY * 2


def test_stored_vectors_are_normalized():
    idx = VectorIndex()
    idx.add("a", [3.0, 4.0])
    assert np.linalg.norm(idx.get_vector("a")) == pytest.approx(1.0)
    assert idx.get_vector("missing") is None


def test_concurrent_reads_during_writes():
    idx, _, _ = _filled(100, dim=8)
    errors = []
    query = _random_vectors(1, dim=8, seed=5)[0]

    def reader():
        try:
            for _ in range(200):
                hits = idx.search(query, limit=5)
                assert len(hits) == 5
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for i, v in enumerate(_random_vectors(300, dim=8, seed=11)):
        idx.add(f"w{i}", v)
    for t in threads:
        t.join()
    assert errors == []
    assert len(idx) == 400
