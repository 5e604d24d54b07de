"""RecognitionEngine: захват → окна → embedding → сопоставление → события.

Один фоновый capture worker владеет устройством и кольцевым буфером и
синхронно прогоняет каждое окно через машину состояний регистрации.
Финализация регистрации (embedding'и окон, усреднение, запись в
хранилище) выполняется во втором фоновом потоке, чтобы запись в БД не
останавливала захват. Управляющие методы (start/stop/begin_enrollment/
set_threshold/CRUD реестра) можно вызывать из любого потока.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from speakerid.audio.buffer import SlidingWindowBuffer
from speakerid.audio.capture import CaptureDevice, SoundDeviceCapture, always_granted
from speakerid.audio.normalizer import SampleNormalizer
from speakerid.errors import (
    CapturePermissionDenied,
    DeviceReadError,
    DeviceUnavailable,
    ErrorKind,
    InvalidName,
    PersistenceFailure,
)
from speakerid.events import EventChannel, RecognitionEvent
from speakerid.speaker.embedder import EmbeddingProvider
from speakerid.speaker.enrollment import EnrollmentState, EnrollmentStateMachine
from speakerid.speaker.matcher import SpeakerMatcher
from speakerid.speaker.models import EnrollmentResult
from speakerid.speaker.registry import ENABLED_KEY, PersistedScalar, SimilarityThreshold, SpeakerRegistry
from speakerid.speaker.storage import ProfileStore, SQLiteProfileStore
from speakerid.utils.config import Settings, settings as default_settings
from speakerid.utils.logging import get_logger

logger = get_logger("engine")


class RecognitionEngine:
    """Конвейер распознавания спикеров в реальном времени.

    Пример:
        engine = RecognitionEngine(embedder=ResemblyzerEmbedder())
        engine.start()
        engine.begin_enrollment("Alice")
        event = engine.events.get(timeout=1.0)
        ...
        engine.close()
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: Optional[ProfileStore] = None,
        capture: Optional[CaptureDevice] = None,
        events: Optional[EventChannel] = None,
        permission_checker: Callable[[], bool] = always_granted,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            embedder: Модель embedding'ов (внешний коллаборатор).
            store: Хранилище профилей. По умолчанию SQLite в config.DB_PATH.
            capture: Устройство записи. По умолчанию микрофон через sounddevice.
            events: Канал событий. По умолчанию создаётся новый (ёмкостью
                config.EVENT_QUEUE_MAXSIZE) и закрывается в close().
            permission_checker: Выдано ли разрешение на микрофон.
            config: Настройки. По умолчанию глобальные settings.
            clock: Монотонные часы для таймингов регистрации.
        """
        self.config = config or default_settings
        self.embedder = embedder
        self.store = store if store is not None else SQLiteProfileStore(self.config.DB_PATH)
        self.capture = capture if capture is not None else SoundDeviceCapture()
        self._owns_events = events is None
        self.events = events if events is not None else EventChannel(maxsize=self.config.EVENT_QUEUE_MAXSIZE)
        self._permission_checker = permission_checker

        self.registry = SpeakerRegistry(self.store, self.config.EMBEDDING_DIM)
        self.threshold = SimilarityThreshold(self.store, self.config.DEFAULT_SIMILARITY_THRESHOLD)
        self._enabled = PersistedScalar(self.store, ENABLED_KEY, 1.0, lower=0.0, upper=1.0)

        self.normalizer = SampleNormalizer(self.config.BIT_DEPTH)
        self.buffer = SlidingWindowBuffer(self.config.window_size_samples, self.config.hop_size_samples)

        self._persist_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="speakerid-persist")
        self.matcher = SpeakerMatcher(
            embedder=embedder,
            registry=self.registry,
            threshold=self.threshold,
            events=self.events,
            window_size=self.config.window_size_samples,
        )
        self.enrollment = EnrollmentStateMachine(
            embedder=embedder,
            registry=self.registry,
            events=self.events,
            on_recognize=self._recognize,
            enrollment_duration=self.config.ENROLLMENT_DURATION_SEC,
            min_windows=self.config.MIN_ENROLLMENT_WINDOWS,
            target_windows=self.config.enrollment_target_windows,
            window_size=self.config.window_size_samples,
            clock=clock,
            executor=self._persist_executor,
        )

        self._control_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._paused = False
        self._closed = False
        self._windows_processed = 0
        self._windows_dropped_disabled = 0
        self._last_exit_reason: Optional[str] = None

        self._load_state()

    # ── Состояние ──────────────────────────────────────────────────────────

    def _load_state(self) -> None:
        try:
            self.registry.load()
        except PersistenceFailure as e:
            logger.error("registry_load_failed", error=str(e))
            self.events.publish(RecognitionEvent.error(ErrorKind.PERSISTENCE_FAILURE, str(e)))
        self.threshold.load()
        self._enabled.load()
        logger.info(
            "engine_initialized",
            speakers=len(self.registry),
            threshold=self.threshold.value,
            enabled=self.enabled,
            window_size=self.buffer.window_size,
            hop_size=self.buffer.hop_size,
            sample_rate=self.config.SAMPLE_RATE,
        )

    @property
    def is_active(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def enabled(self) -> bool:
        return self._enabled.value >= 0.5

    # ── Жизненный цикл ─────────────────────────────────────────────────────

    def start(self) -> bool:
        """Открывает устройство и запускает capture worker.

        Повторный вызов при активном worker'е ничего не делает. Если
        предыдущий worker ещё завершается после stop(), start() ждёт его
        выхода не дольше STOP_JOIN_TIMEOUT_SEC.

        Raises:
            CapturePermissionDenied: нет доступа к микрофону.
            DeviceUnavailable: устройство не открылось / не начало запись,
                или предыдущий worker так и не освободил его.
        """
        with self._control_lock:
            if self._closed:
                raise RuntimeError("Engine is closed")
            if self.is_active and not self._stop_event.is_set():
                logger.debug("engine_already_active")
                return True
            self._wait_previous_worker()

            if not self._permission_checker():
                logger.warning("capture_permission_denied")
                self.events.publish(RecognitionEvent.permission_required())
                self.events.publish(
                    RecognitionEvent.error(ErrorKind.CAPTURE_PERMISSION_DENIED, "Microphone permission not granted")
                )
                raise CapturePermissionDenied("Microphone permission not granted")

            try:
                self.capture.open(self.config.SAMPLE_RATE, self.config.CHANNELS, self.config.BIT_DEPTH)
            except DeviceUnavailable as e:
                self.events.publish(RecognitionEvent.error(ErrorKind.DEVICE_UNAVAILABLE, str(e)))
                raise
            except Exception as e:
                logger.error("capture_open_unexpected_error", error=str(e))
                self.events.publish(RecognitionEvent.error(ErrorKind.DEVICE_UNAVAILABLE, str(e)))
                raise DeviceUnavailable(f"Cannot open capture device: {e}") from e

            self.buffer.reset()
            self._stop_event.clear()
            self._paused = False
            logger.info("engine_started", chunk=self.config.read_chunk_samples, timeout=self.config.READ_TIMEOUT_SEC)
            self.events.publish(RecognitionEvent.engine_started())
            self._thread = threading.Thread(target=self._capture_loop, name="speakerid-capture", daemon=True)
            self._thread.start()
        return True

    def _wait_previous_worker(self) -> None:
        # Вызывается под self._control_lock
        thread = self._thread
        if thread is None:
            return
        if thread.is_alive():
            thread.join(self.config.STOP_JOIN_TIMEOUT_SEC)
            if thread.is_alive():
                message = "Previous capture worker is still stopping"
                logger.error("capture_worker_still_stopping", timeout=self.config.STOP_JOIN_TIMEOUT_SEC)
                self.events.publish(RecognitionEvent.error(ErrorKind.DEVICE_UNAVAILABLE, message))
                raise DeviceUnavailable(message)
        self._thread = None

    def stop(self) -> None:
        """Останавливает capture worker на ближайшей границе чтения. Идемпотентно.

        Устройство закрывает сам worker при выходе, поэтому даже если join
        не уложился в таймаут, устройство не освобождается раньше, чем
        worker перестанет его читать.
        """
        with self._control_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join(self.config.STOP_JOIN_TIMEOUT_SEC)
                if thread.is_alive():
                    logger.error("capture_worker_join_timeout", timeout=self.config.STOP_JOIN_TIMEOUT_SEC)
                    return
            self._thread = None
        logger.info("engine_stopped", reason=self._last_exit_reason)

    def pause(self) -> None:
        """Останавливает захват, сохраняя реестр и настройки."""
        with self._control_lock:
            if self.is_active:
                self.stop()
                self._paused = True
                logger.info("engine_paused")

    def resume(self) -> bool:
        """Возобновляет захват после pause(). False, если пауза не ставилась."""
        with self._control_lock:
            if not self._paused:
                return False
            started = self.start()
            logger.info("engine_resumed")
            return started

    def close(self, timeout: Optional[float] = None) -> None:
        """Останавливает захват, дожидается фоновых регистраций и освобождает ресурсы."""
        with self._control_lock:
            if self._closed:
                return
            self.stop()
            self.enrollment.wait_pending(timeout)
            self._persist_executor.shutdown(wait=True)
            if self._owns_events:
                self.events.close()
            self._closed = True
        logger.info("engine_closed")

    def __enter__(self) -> "RecognitionEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ── Capture worker ─────────────────────────────────────────────────────

    def _capture_loop(self) -> None:
        cfg = self.config
        chunk = cfg.read_chunk_samples
        timeouts = 0
        read_errors = 0
        reason = "stopped"
        logger.info("capture_loop_started", chunk=chunk)

        try:
            while not self._stop_event.is_set():
                try:
                    raw = self.capture.read(chunk, cfg.READ_TIMEOUT_SEC)
                except DeviceReadError as e:
                    if e.transient and read_errors < cfg.MAX_TRANSIENT_READ_ERRORS:
                        read_errors += 1
                        logger.warning("capture_read_error", error=str(e), attempt=read_errors)
                        self.events.publish(RecognitionEvent.error(ErrorKind.DEVICE_READ_ERROR, str(e)))
                        continue
                    reason = "device_error"
                    logger.error("capture_read_fatal", error=str(e), transient=e.transient, attempts=read_errors)
                    self.events.publish(RecognitionEvent.error(ErrorKind.DEVICE_READ_ERROR, str(e)))
                    break
                except Exception as e:
                    reason = "device_error"
                    logger.error("capture_read_unexpected_error", error=str(e))
                    self.events.publish(RecognitionEvent.error(ErrorKind.DEVICE_READ_ERROR, str(e)))
                    break

                if raw is None or len(raw) == 0:
                    timeouts += 1
                    logger.warning("capture_read_timeout", consecutive=timeouts)
                    if timeouts >= cfg.MAX_CONSECUTIVE_READ_TIMEOUTS:
                        reason = "device_stalled"
                        message = f"No audio data for {timeouts} consecutive reads"
                        logger.error("capture_device_stalled", consecutive=timeouts)
                        self.events.publish(RecognitionEvent.error(ErrorKind.DEVICE_READ_ERROR, message))
                        break
                    continue

                timeouts = 0
                read_errors = 0
                self._process_chunk(raw)
        finally:
            self._last_exit_reason = reason
            try:
                self.capture.close()
            except Exception as e:
                logger.warning("capture_close_failed", error=str(e))
            logger.info("capture_loop_finished", reason=reason, windows=self._windows_processed)
            self.events.publish(RecognitionEvent.engine_stopped(reason))

    def _process_chunk(self, raw) -> int:
        samples = self.normalizer(raw)
        windows = self.buffer.append(samples)
        for window in windows:
            self._windows_processed += 1
            try:
                self.enrollment.on_window(window)
            except Exception as e:
                # Сбой обработки одного окна не должен останавливать захват
                logger.error("window_processing_failed", error=str(e), exc_info=True)
        return len(windows)

    def feed(self, raw_samples) -> int:
        """Прогоняет сырые PCM-сэмплы через конвейер в потоке вызова.

        Для обработки записанного аудио без микрофона; недоступно, пока
        работает capture worker (буфер принадлежит ему).

        Returns:
            Сколько окон было выдано.
        """
        if self.is_active:
            raise RuntimeError("feed() is not allowed while the capture worker is running")
        return self._process_chunk(np.asarray(raw_samples))

    def _recognize(self, window: np.ndarray) -> None:
        if not self.enabled:
            self._windows_dropped_disabled += 1
            return
        self.matcher.match(window)

    # ── Регистрация ────────────────────────────────────────────────────────

    def begin_enrollment(self, name: str) -> None:
        """Начинает регистрацию спикера name.

        Raises:
            InvalidName: пустое имя.
        """
        try:
            self.enrollment.begin_enrollment(name)
        except InvalidName as e:
            logger.warning("enrollment_invalid_name", name=name)
            self.events.publish(RecognitionEvent.error(ErrorKind.INVALID_NAME, str(e)))
            raise

    def end_enrollment(self) -> Optional[EnrollmentResult]:
        """Завершает регистрацию. Запись в хранилище выполняется в потоке вызова."""
        return self.enrollment.end_enrollment()

    def discard_enrollment(self) -> bool:
        return self.enrollment.discard_enrollment()

    @property
    def enrollment_state(self) -> EnrollmentState:
        return self.enrollment.state

    # ── Реестр и настройки ─────────────────────────────────────────────────

    def registered_speaker_names(self) -> List[str]:
        return self.registry.names()

    def delete_speaker(self, name: str) -> bool:
        try:
            return self.registry.delete(name)
        except PersistenceFailure as e:
            self.events.publish(RecognitionEvent.error(ErrorKind.PERSISTENCE_FAILURE, str(e)))
            return False

    def clear_speakers(self) -> bool:
        try:
            self.registry.clear()
            return True
        except PersistenceFailure as e:
            self.events.publish(RecognitionEvent.error(ErrorKind.PERSISTENCE_FAILURE, str(e)))
            return False

    def set_threshold(self, value: float) -> float:
        """Устанавливает порог сходства (ограничивается [0, 1]) и сохраняет его.

        Raises:
            ValueError: порог не является конечным числом.
        """
        try:
            applied = self.threshold.set(value)
        except PersistenceFailure as e:
            self.events.publish(RecognitionEvent.error(ErrorKind.PERSISTENCE_FAILURE, str(e)))
            applied = self.threshold.value
        logger.info("similarity_threshold_set", value=applied)
        return applied

    def get_threshold(self) -> float:
        return self.threshold.value

    def set_enabled(self, enabled: bool) -> None:
        """Включает/выключает распознавание. Регистрация работает в обоих режимах."""
        try:
            self._enabled.set(1.0 if enabled else 0.0)
        except PersistenceFailure as e:
            self.events.publish(RecognitionEvent.error(ErrorKind.PERSISTENCE_FAILURE, str(e)))
        logger.info("recognition_enabled_set", enabled=enabled)

    def stats(self) -> Dict[str, Any]:
        return {
            "speakers": len(self.registry),
            "threshold": self.threshold.value,
            "enabled": self.enabled,
            "active": self.is_active,
            "paused": self._paused,
            "enrollment_state": self.enrollment.state.value,
            "pending_name": self.enrollment.pending_name,
            "windows_processed": self._windows_processed,
            "windows_dropped_disabled": self._windows_dropped_disabled,
            "matches": self.matcher.matches,
            "no_matches": self.matcher.no_matches,
            "inference_failures": self.matcher.inference_failures,
            "last_exit_reason": self._last_exit_reason,
        }
