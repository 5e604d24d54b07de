"""
Кольцевой буфер нормализованных сэмплов с выдачей перекрывающихся окон.

Буфер принадлежит одному capture worker'у и не защищён блокировкой:
другие потоки не должны обращаться к нему напрямую.
"""
from __future__ import annotations

from typing import List

import numpy as np

from speakerid.utils.logging import get_logger

logger = get_logger("audio.buffer")


class SlidingWindowBuffer:
    """Кольцевой буфер ёмкостью window_size + hop_size.

    Курсор записи монотонный (общее число записанных сэмплов), позиция в
    массиве равна курсору по модулю ёмкости. Окно выдаётся, когда курсор
    проходит точку window_size + k * hop_size: первое окно, как только
    накоплено window_size сэмплов истории, далее через каждый hop.
    Выданное окно является копией: последующие записи его не меняют.
    """

    def __init__(self, window_size: int, hop_size: int) -> None:
        """
        Args:
            window_size: Длина окна в сэмплах (N).
            hop_size: Шаг между окнами в сэмплах, 0 < hop_size <= window_size.
        """
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")
        if hop_size <= 0 or hop_size > window_size:
            raise ValueError(f"hop_size must be in (0, {window_size}], got {hop_size}")

        self.window_size = window_size
        self.hop_size = hop_size
        self.capacity = window_size + hop_size
        self._data = np.zeros(self.capacity, dtype=np.float32)
        self._cursor = 0
        self._next_emit = window_size
        self._windows_emitted = 0

    @property
    def total_written(self) -> int:
        """Сколько сэмплов записано с момента создания/сброса."""
        return self._cursor

    @property
    def primed(self) -> bool:
        """Накоплено ли достаточно истории для полного окна."""
        return self._cursor >= self.window_size

    @property
    def windows_emitted(self) -> int:
        return self._windows_emitted

    def append(self, samples) -> List[np.ndarray]:
        """Дописывает сэмплы и возвращает окна, границы которых пересечены.

        Большой кусок режется на сегменты до ближайшей границы окна, поэтому
        ни одно окно не пропускается и не перезаписывается до выдачи,
        независимо от размера куска.

        Returns:
            Список окон в строгом временном порядке (может быть пустым).
        """
        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        windows: List[np.ndarray] = []
        offset = 0
        total = chunk.shape[0]

        while offset < total:
            step = min(total - offset, self._next_emit - self._cursor)
            self._write(chunk[offset:offset + step])
            offset += step

            if self._cursor == self._next_emit:
                windows.append(self.extract_window())
                self._next_emit += self.hop_size
                self._windows_emitted += 1

        if windows:
            logger.debug(
                "windows_emitted",
                count=len(windows),
                cursor=self._cursor,
                total_emitted=self._windows_emitted,
            )
        return windows

    def _write(self, segment: np.ndarray) -> None:
        n = segment.shape[0]
        if n == 0:
            return
        start = self._cursor % self.capacity
        first = min(n, self.capacity - start)
        self._data[start:start + first] = segment[:first]
        if first < n:
            self._data[:n - first] = segment[first:]
        self._cursor += n

    def extract_window(self) -> np.ndarray:
        """Копия последних window_size сэмплов, заканчивающихся на курсоре.

        Raises:
            ValueError: если истории ещё меньше window_size.
        """
        if not self.primed:
            raise ValueError(
                f"Insufficient history: {self._cursor} samples written, window needs {self.window_size}"
            )

        end = self._cursor % self.capacity
        start = (end - self.window_size) % self.capacity
        if start < end:
            window = self._data[start:end].copy()
        else:
            window = np.concatenate((self._data[start:], self._data[:end]))
        window.setflags(write=False)
        return window

    def reset(self) -> None:
        """Сбрасывает историю (например, перед повторным start())."""
        self._data.fill(0.0)
        self._cursor = 0
        self._next_emit = self.window_size
        self._windows_emitted = 0

    def __len__(self) -> int:
        return min(self._cursor, self.capacity)
