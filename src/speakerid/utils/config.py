"""Конфигурация приложения."""
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Настройки распознавания спикеров."""

    # Audio capture
    SAMPLE_RATE: int = 16000
    CHANNELS: int = 1
    BIT_DEPTH: int = 16  # 8 | 16 | 32

    # Окно и шаг задаются одной парой, без "правильных" значений по умолчанию в коде
    WINDOW_SIZE_MS: int = 2000
    HOP_SIZE_MS: int = 500

    # Embedding
    EMBEDDING_DIM: int = 256  # resemblyzer GE2E d-vector

    # Matching
    DEFAULT_SIMILARITY_THRESHOLD: float = 0.55

    # Enrollment
    ENROLLMENT_DURATION_SEC: float = 10.0
    MIN_ENROLLMENT_WINDOWS: int = 3

    # Capture worker
    READ_CHUNK_MS: Optional[int] = None  # None = один hop за чтение
    READ_TIMEOUT_SEC: float = 1.0
    MAX_CONSECUTIVE_READ_TIMEOUTS: int = 5
    MAX_TRANSIENT_READ_ERRORS: int = 3
    STOP_JOIN_TIMEOUT_SEC: float = 2.0

    # Events
    EVENT_QUEUE_MAXSIZE: int = 1024  # 0 = без ограничения; при переполнении выбрасывается самое старое

    # Storage
    DB_PATH: Path = Path("speakerid.db")

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="SPEAKERID_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    @model_validator(mode="after")
    def _check_window_pair(self) -> "Settings":
        if self.WINDOW_SIZE_MS <= 0 or self.HOP_SIZE_MS <= 0:
            raise ValueError("WINDOW_SIZE_MS and HOP_SIZE_MS must be positive")
        if self.HOP_SIZE_MS > self.WINDOW_SIZE_MS:
            raise ValueError(
                f"HOP_SIZE_MS ({self.HOP_SIZE_MS}) must not exceed WINDOW_SIZE_MS ({self.WINDOW_SIZE_MS})"
            )
        if not 0.0 <= self.DEFAULT_SIMILARITY_THRESHOLD <= 1.0:
            raise ValueError("DEFAULT_SIMILARITY_THRESHOLD must be within [0.0, 1.0]")
        if self.EVENT_QUEUE_MAXSIZE < 0:
            raise ValueError("EVENT_QUEUE_MAXSIZE must not be negative")
        return self

    @property
    def window_size_samples(self) -> int:
        return self.SAMPLE_RATE * self.WINDOW_SIZE_MS // 1000

    @property
    def hop_size_samples(self) -> int:
        return self.SAMPLE_RATE * self.HOP_SIZE_MS // 1000

    @property
    def read_chunk_samples(self) -> int:
        """Размер одного чтения с устройства в сэмплах."""
        if self.READ_CHUNK_MS is None:
            return self.hop_size_samples
        return max(1, self.SAMPLE_RATE * self.READ_CHUNK_MS // 1000)

    @property
    def enrollment_target_windows(self) -> int:
        """Ожидаемое число окон за сессию регистрации (для прогресса)."""
        return max(1, int(self.ENROLLMENT_DURATION_SEC * 1000) // self.HOP_SIZE_MS)


# Глобальный экземпляр настроек
settings = Settings()
