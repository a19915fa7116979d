import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from similarity import (
    DimensionMismatch,
    batch_cosine,
    cosine,
    euclidean,
    normalize,
    normalize_rows,
    similarity_level,
    top_k,
)


def test_cosine_identical_and_opposite():
    assert cosine([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)
    assert cosine([1, 0], [-1, 0]) == pytest.approx(-1.0)
    assert cosine([1, 0], [0, 1]) == pytest.approx(0.0)


def test_cosine_zero_vector_is_zero():
    assert cosine([0, 0, 0], [1, 2, 3]) == 0.0


def test_cosine_symmetric_and_bounded():
    rng = np.random.default_rng(1)
    for _ in range(20):
        a, b = rng.normal(size=8), rng.normal(size=8)
        s = cosine(a, b)
        assert -1.0 <= s <= 1.0
        assert s == pytest.approx(cosine(b, a))


def test_dimension_mismatch_raises():
    with pytest.raises(DimensionMismatch) as exc:
        cosine([1, 2, 3], [1, 2])
    assert exc.value.expected == 3
    assert exc.value.actual == 2
    with pytest.raises(DimensionMismatch):
        euclidean([1, 2], [1, 2, 3])


def test_euclidean():
    assert euclidean([0, 0], [3, 4]) == pytest.approx(5.0)


def test_normalize_unit_length_and_zero_unchanged():
    assert np.linalg.norm(normalize([3, 4])) == pytest.approx(1.0)
    z = normalize([0, 0, 0])
    assert np.all(z == 0)


def test_normalize_rows_keeps_zero_rows():
    m = normalize_rows(np.array([[3.0, 4.0], [0.0, 0.0]]))
    assert np.linalg.norm(m[0]) == pytest.approx(1.0)
    assert np.all(m[1] == 0)


def test_batch_cosine_matches_pairwise():
    rng = np.random.default_rng(2)
    q = rng.normal(size=6)
    targets = rng.normal(size=(5, 6))
    batch = batch_cosine(q, targets)
    assert [i for i, _ in batch] == list(range(5))
    for i, s in batch:
        assert s == pytest.approx(cosine(q, targets[i]), abs=1e-5)


def test_batch_cosine_list_input_and_empty():
    assert batch_cosine([1, 0], []) == []
    assert batch_cosine([1, 0], [[1, 0], [0, 1]])[0][1] == pytest.approx(1.0)
    with pytest.raises(DimensionMismatch):
        batch_cosine([1, 0], [[1, 0, 0]])


def test_top_k_filters_and_breaks_ties_by_key():
    scored = [("b", 0.5), ("a", 0.5), ("c", 0.9), ("d", 0.1)]
    assert top_k(scored, 3, min_score=0.2) == [("c", 0.9), ("a", 0.5), ("b", 0.5)]
    assert len(top_k(scored, None)) == 4


def test_similarity_level():
    assert similarity_level(0.7) == "high"
    assert similarity_level(0.5) == "medium"
    assert similarity_level(0.1) == "low"
