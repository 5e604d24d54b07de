"""Машина состояний регистрации спикера.

Состояния: RECOGNIZING (по умолчанию) и ENROLLING(pending_name).

    begin_enrollment(name)  RECOGNIZING/ENROLLING → ENROLLING (сессия заново)
    on_window(window)       RECOGNIZING: окно уходит в распознавание
                            ENROLLING:   окно копится в сессии; по истечении
                                         ENROLLMENT_DURATION_SEC автозавершение
    end_enrollment()        ENROLLING → RECOGNIZING, финализация сессии
    discard_enrollment()    ENROLLING → RECOGNIZING без изменения реестра

Финализация: embedding на каждое окно (неудачные пропускаются), среднее
арифметическое, запись профиля в реестр. Если окон меньше минимума,
регистрация отклоняется без изменения реестра. Сессия очищается при
любом исходе.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Executor, Future, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from speakerid.errors import (
    ErrorKind,
    InferenceFailed,
    InsufficientEnrollmentData,
    PersistenceFailure,
)
from speakerid.events import EventChannel, RecognitionEvent
from speakerid.utils.logging import get_logger

from .embedder import EmbeddingProvider, generate_embedding
from .models import EnrollmentResult, validate_name
from .registry import SpeakerRegistry
from .similarity import average_embeddings

logger = get_logger("speaker.enrollment")

MIN_ENROLLMENT_WINDOWS = 3


class EnrollmentState(str, Enum):
    RECOGNIZING = "recognizing"
    ENROLLING = "enrolling"


@dataclass
class EnrollmentSession:
    """Сессия регистрации: имя, собранные окна, время старта."""

    pending_name: str
    started_at: float
    windows: List[np.ndarray] = field(default_factory=list)


class EnrollmentStateMachine:
    """Маршрутизирует окна между распознаванием и регистрацией.

    on_window() вызывается из capture worker'а, begin/end/discard из
    любого управляющего потока; состояние и сессия защищены одной
    блокировкой. События публикуются вне блокировки.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        registry: SpeakerRegistry,
        events: EventChannel,
        on_recognize: Callable[[np.ndarray], object],
        enrollment_duration: float = 10.0,
        min_windows: int = MIN_ENROLLMENT_WINDOWS,
        target_windows: int = 20,
        window_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        executor: Optional[Executor] = None,
    ) -> None:
        """
        Args:
            embedder: Провайдер embedding'ов.
            registry: Реестр, куда пишется итоговый профиль.
            events: Канал событий.
            on_recognize: Куда отправлять окна в режиме распознавания.
            enrollment_duration: Длительность сессии в секундах до автозавершения.
            min_windows: Минимум окон для регистрации.
            target_windows: Ожидаемое число окон (для событий прогресса).
            window_size: Ожидаемая длина окна (проверяется перед моделью).
            clock: Источник монотонного времени.
            executor: Где выполнять автофинализацию. None: в потоке вызова.
        """
        self.embedder = embedder
        self.registry = registry
        self.events = events
        self.on_recognize = on_recognize
        self.enrollment_duration = enrollment_duration
        self.min_windows = min_windows
        self.target_windows = target_windows
        self.window_size = window_size
        self._clock = clock
        self._executor = executor

        self._lock = threading.Lock()
        self._session: Optional[EnrollmentSession] = None
        self._pending: List[Future] = []
        self.last_result: Optional[EnrollmentResult] = None

    @property
    def state(self) -> EnrollmentState:
        with self._lock:
            return EnrollmentState.ENROLLING if self._session is not None else EnrollmentState.RECOGNIZING

    @property
    def pending_name(self) -> Optional[str]:
        with self._lock:
            return self._session.pending_name if self._session is not None else None

    @property
    def windows_collected(self) -> int:
        with self._lock:
            return len(self._session.windows) if self._session is not None else 0

    def begin_enrollment(self, name: str) -> None:
        """Начинает регистрацию. Повторный вызов перезапускает сессию с новым именем.

        Raises:
            InvalidName: имя пустое или из пробелов.
        """
        clean = validate_name(name)
        with self._lock:
            previous = self._session
            self._session = EnrollmentSession(pending_name=clean, started_at=self._clock())

        if previous is not None:
            logger.info(
                "enrollment_restarted",
                previous_name=previous.pending_name,
                discarded_windows=len(previous.windows),
                name=clean,
            )
        logger.info(
            "enrollment_started",
            name=clean,
            duration_sec=self.enrollment_duration,
            target_windows=self.target_windows,
        )
        self.events.publish(RecognitionEvent.enrollment_started(clean))

    def on_window(self, window: np.ndarray) -> None:
        """Точка входа capture worker'а для каждого выданного окна."""
        finished: Optional[EnrollmentSession] = None
        with self._lock:
            session = self._session
            if session is not None:
                session.windows.append(window)
                collected = len(session.windows)
                name = session.pending_name
                elapsed = self._clock() - session.started_at
                if elapsed >= self.enrollment_duration:
                    finished = self._session
                    self._session = None

        if session is None:
            self.on_recognize(window)
            return

        logger.debug("enrollment_window", name=name, collected=collected, elapsed=round(elapsed, 2))
        self.events.publish(RecognitionEvent.enrollment_progress(name, collected, self.target_windows))

        if finished is not None:
            logger.info("enrollment_duration_elapsed", name=name, windows=collected)
            self._submit(finished)

    def end_enrollment(self) -> Optional[EnrollmentResult]:
        """Завершает регистрацию синхронно, в потоке вызова.

        Returns:
            EnrollmentResult или None, если регистрация не шла.
        """
        with self._lock:
            session, self._session = self._session, None
        if session is None:
            logger.warning("end_enrollment_not_enrolling")
            return None
        return self._finalize(session)

    def discard_enrollment(self) -> bool:
        """Отменяет регистрацию без изменения реестра."""
        with self._lock:
            session, self._session = self._session, None
        if session is None:
            return False
        logger.info("enrollment_discarded", name=session.pending_name, windows=len(session.windows))
        return True

    def _submit(self, session: EnrollmentSession) -> None:
        if self._executor is None:
            self._finalize(session)
            return
        future = self._executor.submit(self._finalize, session)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def wait_pending(self, timeout: Optional[float] = None) -> bool:
        """Ждёт фоновые финализации. True, если все завершились."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _finalize(self, session: EnrollmentSession) -> EnrollmentResult:
        name = session.pending_name
        collected = len(session.windows)
        try:
            result = self._build_profile(session)
        except Exception as e:
            logger.error("enrollment_failed", name=name, error=str(e))
            result = EnrollmentResult(name=name, success=False, windows_collected=collected, message=str(e))
        finally:
            session.windows.clear()

        self.last_result = result
        self.events.publish(RecognitionEvent.enrollment_complete(name, result.success))
        return result

    def _require_windows(self, collected: int) -> None:
        if collected < self.min_windows:
            raise InsufficientEnrollmentData(collected, self.min_windows)

    def _build_profile(self, session: EnrollmentSession) -> EnrollmentResult:
        name = session.pending_name
        collected = len(session.windows)

        try:
            self._require_windows(collected)
        except InsufficientEnrollmentData as e:
            logger.warning("enrollment_insufficient_data", name=name, collected=collected, required=self.min_windows)
            self.events.publish(RecognitionEvent.error(e.kind, str(e)))
            return EnrollmentResult(
                name=name,
                success=False,
                windows_collected=collected,
                error_kind=e.kind,
                message=str(e),
            )

        embeddings: List[np.ndarray] = []
        for index, window in enumerate(session.windows):
            try:
                embeddings.append(
                    generate_embedding(
                        self.embedder,
                        window,
                        expected_dim=self.registry.embedding_dim,
                        window_size=self.window_size,
                    )
                )
            except InferenceFailed as e:
                logger.warning("enrollment_window_skipped", name=name, index=index, error=str(e))

        if not embeddings:
            message = f"No embeddings could be generated from {collected} windows"
            logger.error("enrollment_no_embeddings", name=name, windows=collected)
            self.events.publish(RecognitionEvent.error(ErrorKind.INFERENCE_FAILED, message))
            return EnrollmentResult(
                name=name,
                success=False,
                windows_collected=collected,
                error_kind=ErrorKind.INFERENCE_FAILED,
                message=message,
            )

        mean = average_embeddings(embeddings)
        try:
            self.registry.save(name, mean)
        except PersistenceFailure as e:
            self.events.publish(RecognitionEvent.error(ErrorKind.PERSISTENCE_FAILURE, str(e)))
            return EnrollmentResult(
                name=name,
                success=False,
                windows_collected=collected,
                embeddings_used=len(embeddings),
                error_kind=ErrorKind.PERSISTENCE_FAILURE,
                message=str(e),
                profile_retained=True,
                embedding=mean,
            )

        logger.info("enrollment_complete", name=name, windows=collected, embeddings_used=len(embeddings))
        return EnrollmentResult(
            name=name,
            success=True,
            windows_collected=collected,
            embeddings_used=len(embeddings),
            embedding=mean,
        )
