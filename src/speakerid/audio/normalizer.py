"""Нормализация целочисленного PCM в float32 [-1.0, 1.0]."""
from __future__ import annotations

import numpy as np

# Делитель = 2^(bits-1): int16 → 32768, как при записи WAV
_SCALE = {
    8: 128.0,
    16: 32768.0,
    32: 2147483648.0,
}


class SampleNormalizer:
    """Переводит сырые PCM-сэмплы в ограниченный float-диапазон.

    8-битный PCM беззнаковый (середина = 128), 16 и 32 бита: знаковые.
    Результат всегда float32 и всегда внутри [-1.0, 1.0].
    """

    def __init__(self, bit_depth: int = 16) -> None:
        if bit_depth not in _SCALE:
            raise ValueError(f"Unsupported bit depth: {bit_depth} (expected one of {sorted(_SCALE)})")
        self.bit_depth = bit_depth
        self._scale = _SCALE[bit_depth]

    def normalize(self, samples) -> np.ndarray:
        raw = np.asarray(samples)
        if raw.size == 0:
            return np.zeros(0, dtype=np.float32)

        # float64: int32 не помещается в мантиссу float32
        values = raw.astype(np.float64).reshape(-1)
        if self.bit_depth == 8:
            values = values - 128.0
        normalized = values / self._scale
        return np.clip(normalized, -1.0, 1.0).astype(np.float32)

    __call__ = normalize


def normalize_pcm16(samples) -> np.ndarray:
    """int16 PCM → float32 [-1, 1]."""
    return SampleNormalizer(16).normalize(samples)
