"""Общие фикстуры для тестов speakerid.

Тесты не трогают ни микрофон, ни resemblyzer: устройство записи и модель
embedding'ов подменяются управляемыми фейками, хранилище: временной
SQLite БД.
"""
from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest

from speakerid.errors import DeviceUnavailable
from speakerid.events import EventChannel
from speakerid.speaker.storage import SQLiteProfileStore
from speakerid.utils.config import Settings

DIM = 4


# ═══════════════════════════════════════════════════════════════════════════
# Фейки
# ═══════════════════════════════════════════════════════════════════════════

def mean_embedding(window: np.ndarray) -> np.ndarray:
    """Embedding по среднему окна: константный "голос" → фиксированный вектор.

    +0.5 → [0.5, 0.5, 0, 0], -0.5 → [-0.5, 0.5, 0, 0] (ортогональны).
    """
    mean = float(np.mean(window))
    vec = np.zeros(DIM, dtype=np.float32)
    vec[0] = mean
    vec[1] = 1.0 - abs(mean)
    return vec


class FakeEmbedder:
    """EmbeddingProvider с подменяемой функцией и счётчиком вызовов."""

    def __init__(self, fn: Optional[Callable[[np.ndarray], np.ndarray]] = None, dim: int = DIM) -> None:
        self.dim = dim
        self.fn = fn or mean_embedding
        self.calls = 0
        self._lock = threading.Lock()

    def embed(self, window: np.ndarray) -> np.ndarray:
        with self._lock:
            self.calls += 1
        return self.fn(window)


class FakeCapture:
    """CaptureDevice по сценарию.

    Элементы script: массив отдаётся как данные, None означает таймаут, исключение выбрасывается.
    После конца сценария read() возвращает None (как тихое устройство).
    """

    def __init__(
        self,
        script: Optional[List[object]] = None,
        open_error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.script = list(script or [])
        self.delay = delay
        self.open_error = open_error
        self.opened = False
        self.closed = False
        self.open_calls = 0
        self.reads = 0
        self.open_args = None
        self._lock = threading.Lock()

    def open(self, sample_rate: int, channels: int, bit_depth: int) -> None:
        self.open_calls += 1
        self.open_args = (sample_rate, channels, bit_depth)
        if self.open_error is not None:
            raise self.open_error
        self.opened = True
        self.closed = False

    def read(self, frames: int, timeout: float):
        with self._lock:
            self.reads += 1
            item = self.script.pop(0) if self.script else None
        if isinstance(item, BaseException):
            raise item
        if item is None:
            time.sleep(min(timeout, 0.005))
            return None
        if self.delay:
            time.sleep(self.delay)
        return item

    def close(self) -> None:
        self.closed = True
        self.opened = False


class ManualClock:
    """Монотонные часы, которые двигает тест."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


def pcm(value: float, count: int) -> np.ndarray:
    """int16 PCM постоянного уровня value ∈ [-1, 1)."""
    return np.full(count, int(round(value * 32768)), dtype=np.int16)


# ═══════════════════════════════════════════════════════════════════════════
# Фикстуры
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def db_path(tmp_path) -> Path:
    """Временная SQLite БД для тестов."""
    return tmp_path / "speakers.db"


@pytest.fixture
def store(db_path) -> SQLiteProfileStore:
    return SQLiteProfileStore(db_path)


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_settings(db_path):
    """Фабрика маленьких настроек: окно 8 сэмплов, шаг 4, embedding 4-dim."""

    def factory(**overrides) -> Settings:
        values = dict(
            SAMPLE_RATE=1000,
            WINDOW_SIZE_MS=8,
            HOP_SIZE_MS=4,
            EMBEDDING_DIM=DIM,
            ENROLLMENT_DURATION_SEC=10.0,
            MIN_ENROLLMENT_WINDOWS=3,
            READ_TIMEOUT_SEC=0.01,
            MAX_CONSECUTIVE_READ_TIMEOUTS=1000,
            MAX_TRANSIENT_READ_ERRORS=3,
            STOP_JOIN_TIMEOUT_SEC=2.0,
            DB_PATH=db_path,
        )
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def unavailable_capture() -> FakeCapture:
    return FakeCapture(open_error=DeviceUnavailable("no input device"))
