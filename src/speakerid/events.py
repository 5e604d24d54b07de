"""События распознавания и канал их доставки.

Вместо набора callback-интерфейсов ядро публикует единый тип
RecognitionEvent в EventChannel. Потребитель читает канал сам
(get/drain) или подписывает listener. Порядок сохраняется в пределах
одного потока-производителя.
"""
from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from speakerid.errors import ErrorKind
from speakerid.utils.logging import get_logger

logger = get_logger("events")


class EventKind(str, Enum):
    """Тип события."""

    MATCH = "match"
    NO_MATCH = "no_match"
    NO_ENROLLED_SPEAKERS = "no_enrolled_speakers"
    ENROLLMENT_STARTED = "enrollment_started"
    ENROLLMENT_PROGRESS = "enrollment_progress"
    ENROLLMENT_COMPLETE = "enrollment_complete"
    ERROR = "error"
    PERMISSION_REQUIRED = "permission_required"
    ENGINE_STARTED = "engine_started"
    ENGINE_STOPPED = "engine_stopped"


@dataclass(frozen=True)
class RecognitionEvent:
    """Событие конвейера. Заполнены только поля, относящиеся к kind."""

    kind: EventKind
    name: Optional[str] = None
    score: Optional[float] = None
    success: Optional[bool] = None
    windows_collected: Optional[int] = None
    target_windows: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def match(cls, name: str, score: float) -> "RecognitionEvent":
        return cls(EventKind.MATCH, name=name, score=score)

    @classmethod
    def no_match(cls, best_score: Optional[float] = None) -> "RecognitionEvent":
        return cls(EventKind.NO_MATCH, score=best_score)

    @classmethod
    def no_enrolled_speakers(cls) -> "RecognitionEvent":
        return cls(EventKind.NO_ENROLLED_SPEAKERS)

    @classmethod
    def enrollment_started(cls, name: str) -> "RecognitionEvent":
        return cls(EventKind.ENROLLMENT_STARTED, name=name)

    @classmethod
    def enrollment_progress(cls, name: str, collected: int, target: int) -> "RecognitionEvent":
        return cls(
            EventKind.ENROLLMENT_PROGRESS,
            name=name,
            windows_collected=collected,
            target_windows=target,
        )

    @classmethod
    def enrollment_complete(cls, name: str, success: bool) -> "RecognitionEvent":
        return cls(EventKind.ENROLLMENT_COMPLETE, name=name, success=success)

    @classmethod
    def error(cls, kind: ErrorKind, message: str) -> "RecognitionEvent":
        return cls(EventKind.ERROR, error_kind=kind, message=message)

    @classmethod
    def permission_required(cls) -> "RecognitionEvent":
        return cls(EventKind.PERMISSION_REQUIRED)

    @classmethod
    def engine_started(cls) -> "RecognitionEvent":
        return cls(EventKind.ENGINE_STARTED)

    @classmethod
    def engine_stopped(cls, message: Optional[str] = None) -> "RecognitionEvent":
        return cls(EventKind.ENGINE_STOPPED, message=message)


Listener = Callable[[RecognitionEvent], None]


class EventChannel:
    """Потокобезопасная FIFO-очередь событий с опциональными подписчиками.

    Очередь по умолчанию ограничена DEFAULT_MAXSIZE (maxsize=0 снимает
    ограничение). publish() никогда не блокирует: при переполнении из
    очереди выбрасывается самое старое событие, новое сохраняется.
    Подписчики получают каждое событие независимо от очереди.
    """

    DEFAULT_MAXSIZE = 1024

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE) -> None:
        if maxsize < 0:
            raise ValueError("maxsize must not be negative")
        self._queue: "queue.Queue[RecognitionEvent]" = queue.Queue(maxsize=maxsize)
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._put_lock = threading.Lock()
        self._closed = False
        self._dropped = 0

    def publish(self, event: RecognitionEvent) -> None:
        if self._closed:
            logger.debug("event_after_close_ignored", kind=event.kind.value)
            return
        self._enqueue(event)

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                # Подписчик не должен ронять capture worker
                logger.error("event_listener_failed", kind=event.kind.value, error=str(e))

    def _enqueue(self, event: RecognitionEvent) -> None:
        with self._put_lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    pass
                try:
                    oldest = self._queue.get_nowait()
                except queue.Empty:
                    continue
                self._dropped += 1
                if self._dropped == 1 or self._dropped % 100 == 0:
                    logger.warning(
                        "event_dropped",
                        kind=oldest.kind.value,
                        reason="queue_full",
                        dropped_total=self._dropped,
                    )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Добавляет синхронного подписчика. Возвращает функцию отписки."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def get(self, timeout: Optional[float] = None) -> Optional[RecognitionEvent]:
        """Следующее событие или None по таймауту."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[RecognitionEvent]:
        """Забирает все накопленные события без ожидания."""
        events: List[RecognitionEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        """Сколько старых событий вытеснено из очереди при переполнении."""
        return self._dropped

    def __len__(self) -> int:
        return self._queue.qsize()


class EventDispatcher:
    """Фоновый поток, доставляющий события канала в listener.

    Используется, когда потребителю нужен собственный поток доставки
    (например, UI-поток или консольный вывод CLI).
    """

    def __init__(self, channel: EventChannel, listener: Listener, poll_interval: float = 0.1) -> None:
        self._channel = channel
        self._listener = listener
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="speakerid-events", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            event = self._channel.get(timeout=self._poll_interval)
            if event is None:
                continue
            try:
                self._listener(event)
            except Exception as e:
                logger.error("event_dispatch_failed", kind=event.kind.value, error=str(e))

    def stop(self, timeout: float = 1.0) -> None:
        """Останавливает доставку. Недоставленные события остаются в канале."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = ["EventKind", "RecognitionEvent", "EventChannel", "EventDispatcher", "Listener"]
