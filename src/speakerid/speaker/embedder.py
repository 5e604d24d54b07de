"""Построение embedding'ов для окон аудио.

EmbeddingProvider: внешний коллаборатор: окно фиксированной длины →
вектор фиксированной размерности. По умолчанию используется resemblyzer
(GE2E LSTM, 256-dim d-vector), модель загружается один раз на процесс.
"""
from __future__ import annotations

import threading
from typing import Optional, Protocol

import numpy as np

from speakerid.errors import InferenceFailed
from speakerid.utils.logging import get_logger

from .models import as_embedding

logger = get_logger("speaker.embedder")

_lock = threading.Lock()
_encoder = None  # Lazy init: создаётся при первом вызове get_encoder()


class EmbeddingProvider(Protocol):
    """Модель, отображающая окно в embedding."""

    dim: int

    def embed(self, window: np.ndarray) -> np.ndarray:
        ...


def get_encoder():
    """Возвращает singleton VoiceEncoder (resemblyzer GE2E LSTM).

    Thread-safe: double-checked locking pattern.
    """
    global _encoder
    if _encoder is None:
        with _lock:
            if _encoder is None:
                try:
                    from resemblyzer import VoiceEncoder  # type: ignore[import]

                    _encoder = VoiceEncoder(verbose=False)
                    logger.info("voice_encoder_loaded", model="resemblyzer_GE2E")
                except ImportError as e:
                    logger.error("resemblyzer_not_installed", error=str(e))
                    raise RuntimeError(
                        "resemblyzer not installed. Run: pip install 'speakerid[embedder]'"
                    ) from e
    return _encoder


class ResemblyzerEmbedder:
    """EmbeddingProvider поверх resemblyzer.

    Окно подаётся как есть, без trimming тишины: длина входа фиксирована
    окном буфера, ресемплинг не выполняется.
    """

    dim = 256

    def __init__(self, sample_rate: int = 16000) -> None:
        if sample_rate != 16000:
            raise ValueError("resemblyzer expects 16 kHz audio; resampling is not performed")
        self.sample_rate = sample_rate

    def embed(self, window: np.ndarray) -> np.ndarray:
        encoder = get_encoder()
        embedding: np.ndarray = encoder.embed_utterance(np.asarray(window, dtype=np.float32))
        return embedding.astype(np.float32)


def generate_embedding(
    provider: EmbeddingProvider,
    window: np.ndarray,
    expected_dim: Optional[int] = None,
    window_size: Optional[int] = None,
) -> np.ndarray:
    """Вызывает провайдер и проверяет результат.

    Любая ошибка модели, неверная длина окна или размерность результата
    превращаются в InferenceFailed: для конвейера это потеря одного окна.

    Raises:
        InferenceFailed
    """
    if window_size is not None and len(window) != window_size:
        raise InferenceFailed(f"Window has {len(window)} samples, model expects {window_size}")

    try:
        raw = provider.embed(window)
    except InferenceFailed:
        raise
    except Exception as e:
        logger.warning("embed_window_failed", error=str(e))
        raise InferenceFailed(f"Embedding model failed: {e}") from e

    if raw is None:
        raise InferenceFailed("Embedding model returned no output")

    try:
        return as_embedding(raw, dim=expected_dim)
    except ValueError as e:
        raise InferenceFailed(f"Invalid embedding: {e}") from e
