"""
Vector helpers for semantic similarity (numpy)
"""
from typing import List, Optional, Sequence

import numpy as np


def cosine_similarity(vec1: Optional[Sequence[float]], vec2: Optional[Sequence[float]]) -> float:
    """Compute cosine similarity. Missing or zero vectors score 0.0."""
    if vec1 is None or vec2 is None or len(vec1) == 0 or len(vec2) == 0:
        return 0.0
    v1, v2 = np.asarray(vec1, dtype=float), np.asarray(vec2, dtype=float)
    if v1.shape != v2.shape:
        return 0.0
    norm1, norm2 = np.linalg.norm(v1), np.linalg.norm(v2)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(v1, v2) / (norm1 * norm2))


def similarity_matrix(vectors: List[Sequence[float]]) -> np.ndarray:
    """
    Pairwise cosine similarity for equally sized vectors.

    Rows with zero norm produce 0.0 similarity against everything.
    """
    if not vectors:
        return np.zeros((0, 0))
    matrix = np.asarray(vectors, dtype=float)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0, 1.0, norms)
    normalized = matrix / safe
    normalized[norms[:, 0] == 0] = 0.0
    return normalized @ normalized.T
