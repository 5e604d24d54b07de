"""Косинусное сходство и усреднение embedding'ов."""
from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from speakerid.errors import EmbeddingDimensionMismatch

from .models import SpeakerProfile

_EPS = 1e-12


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Косинусное сходство в [-1, 1].

    Для нулевого вектора результат 0.0 (без деления на 0 и без NaN).

    Raises:
        EmbeddingDimensionMismatch: размерности векторов не совпадают.
    """
    a = np.asarray(a).reshape(-1)
    b = np.asarray(b).reshape(-1)
    if a.shape[0] != b.shape[0]:
        raise EmbeddingDimensionMismatch(
            f"Cannot compare embeddings of dimension {a.shape[0]} and {b.shape[0]}"
        )

    a64 = a.astype(np.float64)
    b64 = b.astype(np.float64)
    norm_a = float(np.linalg.norm(a64))
    norm_b = float(np.linalg.norm(b64))
    if norm_a < _EPS or norm_b < _EPS:
        return 0.0
    sim = float(np.dot(a64, b64) / (norm_a * norm_b))
    return max(-1.0, min(1.0, sim))


def average_embeddings(embeddings: Sequence[np.ndarray]) -> np.ndarray:
    """Поэлементное среднее арифметическое, float32.

    Raises:
        ValueError: пустой список.
        EmbeddingDimensionMismatch: векторы разной размерности.
    """
    if not embeddings:
        raise ValueError("Cannot average an empty list of embeddings")
    dims = {int(np.asarray(e).size) for e in embeddings}
    if len(dims) != 1:
        raise EmbeddingDimensionMismatch(f"Embeddings have different dimensions: {sorted(dims)}")
    stacked = np.stack([np.asarray(e, dtype=np.float64).reshape(-1) for e in embeddings])
    return np.mean(stacked, axis=0).astype(np.float32)


class SimilarityScorer:
    """Сравнивает embedding окна с профилями реестра."""

    def score(self, a: np.ndarray, b: np.ndarray) -> float:
        return cosine_similarity(a, b)

    def best_match(
        self, query: np.ndarray, profiles: Iterable[SpeakerProfile]
    ) -> Tuple[Optional[str], Optional[float]]:
        """Лучшая пара (имя, score) по строгому "больше".

        При равенстве остаётся первый встреченный профиль, так что исход
        детерминирован порядком итерации реестра.
        """
        best_name: Optional[str] = None
        best_score: Optional[float] = None
        for profile in profiles:
            sim = self.score(query, profile.embedding)
            if best_score is None or sim > best_score:
                best_name, best_score = profile.name, sim
        return best_name, best_score
