"""Vector operations for embedding similarity."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, List, Sequence, Tuple, TypeVar

import numpy as np

from errors import DimensionMismatchError
from models import EmbeddingVector

T = TypeVar("T")


@dataclass
class SimilarityResult(Generic[T]):
    similarity: float
    item: T


def _check_dimensions(a: EmbeddingVector, b: EmbeddingVector) -> None:
    if a.dimensions != b.dimensions:
        raise DimensionMismatchError(a.dimensions, b.dimensions)


def cosine_similarity(a: EmbeddingVector, b: EmbeddingVector) -> float:
    """
    Calculate cosine similarity between two embedding vectors.

    Returns a value between -1 and 1, or 0.0 when either vector has zero
    magnitude. Raises DimensionMismatchError when dimensions differ.
    """
    _check_dimensions(a, b)

    v1 = np.asarray(a.values, dtype=np.float64)
    v2 = np.asarray(b.values, dtype=np.float64)

    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)
    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(v1, v2) / (norm1 * norm2))


def top_k_similar(
    query: EmbeddingVector,
    candidates: Sequence[Tuple[EmbeddingVector, T]],
    k: int,
) -> List[SimilarityResult[T]]:
    """
    Rank candidates by cosine similarity to ``query`` and keep the first ``k``.

    Ties keep the candidates' input order (a stable sort with no secondary key).
    Every candidate must share the query's dimensionality.
    """
    if k <= 0 or not candidates:
        return []

    for embedding, _ in candidates:
        _check_dimensions(query, embedding)

    matrix = np.asarray([embedding.values for embedding, _ in candidates], dtype=np.float64)
    q = np.asarray(query.values, dtype=np.float64)

    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    dots = matrix @ q
    scores = np.divide(dots, denom, out=np.zeros_like(dots), where=denom != 0)

    order = np.argsort(-scores, kind="stable")[:k]
    return [SimilarityResult(similarity=float(scores[i]), item=candidates[i][1]) for i in order]
