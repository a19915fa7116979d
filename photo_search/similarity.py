"""Vector similarity primitives shared by the index, the face clusterer and search."""

import numpy as np


class DimensionMismatch(ValueError):
    """Two vectors of different length were compared."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


def _as_vector(v) -> np.ndarray:
    return np.asarray(v, dtype=np.float32).reshape(-1)


def _check_dims(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])


def cosine(a, b) -> float:
    """Cosine similarity in [-1, 1]. Returns 0.0 when either vector has zero norm."""
    a = _as_vector(a)
    b = _as_vector(b)
    _check_dims(a, b)
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    score = float(np.dot(a, b)) / denom
    return max(-1.0, min(1.0, score))


def euclidean(a, b) -> float:
    a = _as_vector(a)
    b = _as_vector(b)
    _check_dims(a, b)
    return float(np.linalg.norm(a - b))


def normalize(v) -> np.ndarray:
    """L2-normalize a vector. Zero vectors are returned unchanged."""
    v = _as_vector(v)
    n = float(np.linalg.norm(v))
    if n == 0.0:
        return v.copy()
    return v / n


def normalize_rows(m: np.ndarray) -> np.ndarray:
    """L2-normalize each row of an (N, D) matrix; zero rows stay zero."""
    m = np.asarray(m, dtype=np.float32)
    if m.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got shape {m.shape}")
    norms = np.linalg.norm(m, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return m / norms


def batch_cosine(query, targets) -> list[tuple[int, float]]:
    """Cosine similarity of ``query`` against each target.

    Args:
        query: (D,) vector.
        targets: (N, D) matrix or a sequence of (D,) vectors.

    Returns:
        [(index, score)] in target order.
    """
    q = _as_vector(query)
    if isinstance(targets, np.ndarray) and targets.ndim == 2:
        matrix = targets.astype(np.float32, copy=False)
    else:
        rows = [_as_vector(t) for t in targets]
        if not rows:
            return []
        for r in rows:
            _check_dims(q, r)
        matrix = np.vstack(rows)
    if matrix.shape[0] == 0:
        return []
    if matrix.shape[1] != q.shape[0]:
        raise DimensionMismatch(q.shape[0], matrix.shape[1])

    scores = normalize_rows(matrix) @ normalize(q)
    scores = np.clip(scores, -1.0, 1.0)
    return [(i, float(s)) for i, s in enumerate(scores)]


def top_k(
    scored: list[tuple[str, float]], k: int | None, min_score: float = -1.0
) -> list[tuple[str, float]]:
    """Filter by ``min_score`` and sort descending; ties broken by key."""
    kept = [(key, s) for key, s in scored if s >= min_score]
    kept.sort(key=lambda x: (-x[1], x[0]))
    return kept[:k] if k else kept


def similarity_level(score: float) -> str:
    if score >= 0.7:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"
