"""Модели данных для распознавания спикеров."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

import numpy as np

from speakerid.errors import ErrorKind, InvalidName


def as_embedding(values, dim: Optional[int] = None) -> np.ndarray:
    """Приводит вектор к неизменяемому 1-D float32 embedding.

    Raises:
        ValueError: если вектор не одномерный, пустой, содержит NaN/inf
            или не совпадает по размерности с dim.
    """
    if np.ndim(values) != 1:
        raise ValueError(f"Embedding must be one-dimensional, got shape {np.shape(values)}")
    arr = np.array(values, dtype=np.float32)
    if arr.size == 0:
        raise ValueError("Embedding must not be empty")
    if dim is not None and arr.size != dim:
        raise ValueError(f"Embedding has {arr.size} elements, expected {dim}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("Embedding contains NaN or infinite values")
    arr.setflags(write=False)
    return arr


def validate_name(name: Optional[str]) -> str:
    """Возвращает имя без пробелов по краям.

    Raises:
        InvalidName: имя пустое или состоит из пробелов.
    """
    if name is None or not str(name).strip():
        raise InvalidName(f"Speaker name must not be empty: {name!r}")
    return str(name).strip()


@dataclass(frozen=True)
class SpeakerProfile:
    """Зарегистрированный спикер: имя (ключ реестра) и усреднённый embedding."""

    name: str
    embedding: np.ndarray  # shape (D,), dtype float32, read-only

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", validate_name(self.name))
        object.__setattr__(self, "embedding", as_embedding(self.embedding))

    @property
    def dim(self) -> int:
        return int(self.embedding.shape[0])


@dataclass(frozen=True)
class MatchResult:
    """Итог сопоставления одного окна с реестром."""

    outcome: Literal[
        "match",         # лучший score >= порога
        "no_match",      # есть профили, но никто не прошёл порог
        "no_speakers",   # реестр пуст
    ]
    name: Optional[str] = None
    score: Optional[float] = None

    @property
    def is_match(self) -> bool:
        return self.outcome == "match"


@dataclass
class EnrollmentResult:
    """Результат завершения сессии регистрации."""

    name: str
    success: bool
    windows_collected: int
    embeddings_used: int = 0
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    # True, если профиль остался в памяти несмотря на ошибку записи в хранилище
    profile_retained: bool = False
    embedding: Optional[np.ndarray] = field(default=None, repr=False)
