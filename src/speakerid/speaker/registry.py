"""Реестр зарегистрированных спикеров и персистентные скаляры.

Реестр целиком загружается в память при старте. Любая мутация сначала
применяется в памяти, затем вся коллекция синхронно переписывается в
хранилище под той же блокировкой: две параллельные регистрации не могут
перемешать свои read-modify-write, и снимок последнего писателя всегда
содержит изменение первого.
"""
from __future__ import annotations

import math
import threading
from typing import Dict, Iterable, List, Optional

import numpy as np

from speakerid.errors import EmbeddingDimensionMismatch, PersistenceFailure
from speakerid.utils.logging import get_logger

from .models import SpeakerProfile, validate_name
from .storage import ProfileStore, coerce_embedding

logger = get_logger("speaker.registry")

THRESHOLD_KEY = "speaker_similarity_threshold"
ENABLED_KEY = "speaker_recognition_enabled"


class SpeakerRegistry:
    """name → SpeakerProfile в порядке регистрации.

    Перезапись существующего имени сохраняет его исходную позицию, поэтому
    "первый зарегистрированный" при равных score остаётся первым.
    """

    def __init__(self, store: ProfileStore, embedding_dim: int) -> None:
        self._store = store
        self.embedding_dim = embedding_dim
        self._profiles: Dict[str, SpeakerProfile] = {}
        self._lock = threading.RLock()

    def load(self) -> int:
        """Загружает все профили из хранилища, заменяя содержимое памяти.

        Записи неверной размерности подрезаются/добиваются нулями, записи с
        нечисловыми значениями пропускаются.

        Returns:
            Количество загруженных профилей.

        Raises:
            PersistenceFailure: хранилище недоступно.
        """
        raw = self._store.read_all()
        loaded: Dict[str, SpeakerProfile] = {}
        for name, serialized in raw.items():
            embedding = coerce_embedding(serialized, self.embedding_dim, name=name)
            if embedding is None:
                logger.warning("profile_skipped", name=name)
                continue
            try:
                loaded[name] = SpeakerProfile(name=name, embedding=embedding)
            except ValueError as e:
                logger.warning("profile_skipped", name=name, error=str(e))

        with self._lock:
            self._profiles = loaded
        logger.info("registry_loaded", count=len(loaded), dim=self.embedding_dim)
        return len(loaded)

    def _commit(self) -> None:
        # Вызывается под self._lock
        snapshot = {name: p.embedding for name, p in self._profiles.items()}
        self._store.write_all(snapshot)

    def register(self, profile: SpeakerProfile) -> None:
        """Добавляет или перезаписывает профиль (last-write-wins) и сохраняет.

        Raises:
            EmbeddingDimensionMismatch: размерность профиля != embedding_dim.
            PersistenceFailure: запись не удалась; профиль в памяти остаётся.
        """
        if profile.dim != self.embedding_dim:
            raise EmbeddingDimensionMismatch(
                f"Profile '{profile.name}' has dimension {profile.dim}, registry expects {self.embedding_dim}"
            )

        with self._lock:
            replaced = profile.name in self._profiles
            self._profiles[profile.name] = profile
            try:
                self._commit()
            except PersistenceFailure as e:
                logger.error("profile_persist_failed_kept_in_memory", name=profile.name, error=str(e))
                raise
        logger.info("profile_registered", name=profile.name, replaced=replaced, total=len(self))

    def save(self, name: str, embedding: np.ndarray) -> SpeakerProfile:
        """Создаёт профиль из имени и embedding и регистрирует его."""
        profile = SpeakerProfile(name=name, embedding=embedding)
        self.register(profile)
        return profile

    def delete(self, name: str) -> bool:
        """Удаляет профиль. False, если такого имени нет.

        Raises:
            PersistenceFailure: удаление из памяти не откатывается.
        """
        name = validate_name(name)
        with self._lock:
            if name not in self._profiles:
                return False
            del self._profiles[name]
            self._commit()
        logger.info("profile_deleted", name=name, total=len(self))
        return True

    def delete_many(self, names: Iterable[str]) -> int:
        """Удаляет несколько профилей одной записью в хранилище."""
        with self._lock:
            removed = [n for n in names if self._profiles.pop(n, None) is not None]
            if removed:
                self._commit()
        if removed:
            logger.info("profiles_deleted", names=removed, total=len(self))
        return len(removed)

    def clear(self) -> None:
        with self._lock:
            self._profiles.clear()
            self._commit()
        logger.info("registry_cleared")

    def get(self, name: str) -> Optional[SpeakerProfile]:
        with self._lock:
            return self._profiles.get(name)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._profiles

    def names(self) -> List[str]:
        with self._lock:
            return list(self._profiles)

    def profiles(self) -> List[SpeakerProfile]:
        """Снимок профилей в порядке регистрации.

        Профили неизменяемы, поэтому снимок можно обходить без блокировки.
        """
        with self._lock:
            return list(self._profiles.values())

    def is_empty(self) -> bool:
        return len(self) == 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._profiles


class PersistedScalar:
    """Одно float-значение с записью в хранилище.

    Чтение: обычное обращение к атрибуту и никогда не блокируется;
    запись значения в память атомарна, запись в хранилище идёт следом.
    """

    def __init__(
        self,
        store: ProfileStore,
        key: str,
        default: float,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
    ) -> None:
        self._store = store
        self.key = key
        self.lower = lower
        self.upper = upper
        self._value = self._clamp(default)

    def _clamp(self, value: float) -> float:
        value = float(value)
        if not math.isfinite(value):
            raise ValueError(f"{self.key} must be a finite number, got {value}")
        if self.lower is not None:
            value = max(self.lower, value)
        if self.upper is not None:
            value = min(self.upper, value)
        return value

    @property
    def value(self) -> float:
        return self._value

    def load(self) -> float:
        """Читает сохранённое значение; при отсутствии остаётся текущее."""
        try:
            stored = self._store.read_scalar(self.key)
        except PersistenceFailure as e:
            logger.warning("scalar_load_failed", key=self.key, error=str(e))
            stored = None
        if stored is not None:
            try:
                self._value = self._clamp(stored)
            except ValueError:
                logger.warning("scalar_invalid_stored_value", key=self.key, stored=stored)
        logger.debug("scalar_loaded", key=self.key, value=self._value)
        return self._value

    def set(self, value: float) -> float:
        """Устанавливает значение (с ограничением диапазона) и сохраняет его.

        Raises:
            ValueError: NaN или бесконечность; значение не меняется.
            PersistenceFailure: значение в памяти уже обновлено.
        """
        clamped = self._clamp(value)
        if clamped != float(value):
            logger.warning("scalar_clamped", key=self.key, requested=float(value), value=clamped)
        self._value = clamped
        self._store.write_scalar(self.key, clamped)
        return clamped


class SimilarityThreshold(PersistedScalar):
    """Порог косинусного сходства в [0.0, 1.0]. Сравнение включительное."""

    def __init__(self, store: ProfileStore, default: float) -> None:
        super().__init__(store, THRESHOLD_KEY, default, lower=0.0, upper=1.0)

    def accepts(self, score: float) -> bool:
        return score >= self._value
