"""
Vector similarity helpers shared by the alignment engine.
"""

from typing import List, Sequence

import numpy as np


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(a) * np.linalg.norm(b) + 1e-12
    return float(np.dot(a, b) / denom)


def cosine_matrix(rows: Sequence[Sequence[float]], cols: Sequence[Sequence[float]]) -> np.ndarray:
    """
    Compute the full cosine similarity matrix between two stacks of vectors.

    Args:
        rows: S vectors (e.g. step text embeddings)
        cols: C vectors (e.g. candidate description embeddings)

    Returns:
        Array with shape (S, C)
    """
    if len(rows) == 0 or len(cols) == 0:
        return np.zeros((len(rows), len(cols)))

    a = np.asarray(rows, dtype=np.float64)
    b = np.asarray(cols, dtype=np.float64)

    a_norm = a / (np.linalg.norm(a, axis=1, keepdims=True) + 1e-12)
    b_norm = b / (np.linalg.norm(b, axis=1, keepdims=True) + 1e-12)
    return a_norm @ b_norm.T


def top_k(row: Sequence[float], k: int) -> List[int]:
    """Indices of the k highest finite scores; ties keep the lower index first."""
    values = np.asarray(row, dtype=np.float64)
    if values.size == 0 or k <= 0:
        return []
    order = np.argsort(-values, kind='stable')
    return [int(i) for i in order if np.isfinite(values[i])][:k]
