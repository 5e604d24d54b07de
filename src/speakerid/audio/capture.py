"""
Захват аудио с микрофона.

CaptureDevice: интерфейс устройства записи, которым пользуется
RecognitionEngine. SoundDeviceCapture: реализация на sounddevice:
PortAudio-callback складывает блоки в очередь, read() забирает их с
ограниченным ожиданием, поэтому зависшее устройство не блокирует
worker бесконечно.
"""
from __future__ import annotations

import queue
import threading
from typing import Optional, Protocol

import numpy as np

from speakerid.errors import DeviceReadError, DeviceUnavailable
from speakerid.utils.logging import get_logger

logger = get_logger("audio.capture")

_DTYPES = {
    8: "uint8",
    16: "int16",
    32: "int32",
}


class CaptureDevice(Protocol):
    """Устройство записи PCM."""

    def open(self, sample_rate: int, channels: int, bit_depth: int) -> None:
        """Открывает устройство и переводит его в режим записи.

        Raises:
            DeviceUnavailable: устройство не открылось или не начало запись.
        """
        ...

    def read(self, frames: int, timeout: float) -> Optional[np.ndarray]:
        """Читает до frames моно-сэмплов, ожидая не дольше timeout секунд.

        Returns:
            Целочисленный массив сэмплов или None, если за timeout ничего не пришло.

        Raises:
            DeviceReadError: ошибка чтения (transient=False: устройство потеряно).
        """
        ...

    def close(self) -> None:
        ...


def always_granted() -> bool:
    """Проверка разрешения по умолчанию.

    На десктопе у PortAudio нет отдельного разрешения на микрофон: отказ
    проявляется как ошибка открытия устройства.
    """
    return True


class SoundDeviceCapture:
    """Запись с микрофона через sounddevice.InputStream."""

    def __init__(self, device: Optional[int | str] = None, max_queued_blocks: int = 64) -> None:
        """
        Args:
            device: Индекс или имя входного устройства (None: по умолчанию).
            max_queued_blocks: Сколько блоков держать, пока worker не прочитал.
        """
        self.device = device
        self._blocks: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=max_queued_blocks)
        self._pending = np.zeros(0, dtype=np.int16)
        self._stream = None
        self._dtype = "int16"
        self._lock = threading.Lock()

    def _callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.warning("audio_status", status=str(status))

        block = indata.mean(axis=1).astype(indata.dtype) if indata.shape[1] > 1 else indata[:, 0].copy()
        try:
            self._blocks.put_nowait(block)
        except queue.Full:
            # Worker отстаёт: выбрасываем самый старый блок
            try:
                self._blocks.get_nowait()
            except queue.Empty:
                pass
            self._blocks.put_nowait(block)
            logger.warning("capture_block_dropped", queued=self._blocks.qsize())

    def open(self, sample_rate: int, channels: int, bit_depth: int) -> None:
        if bit_depth not in _DTYPES:
            raise DeviceUnavailable(f"Unsupported bit depth: {bit_depth}")
        self._dtype = _DTYPES[bit_depth]

        with self._lock:
            if self._stream is not None:
                return
            try:
                import sounddevice as sd

                stream = sd.InputStream(
                    samplerate=sample_rate,
                    channels=channels,
                    dtype=self._dtype,
                    device=self.device,
                    callback=self._callback,
                )
                stream.start()
            except Exception as e:
                logger.error("capture_open_failed", device=self.device, error=str(e))
                raise DeviceUnavailable(f"Cannot open input device: {e}") from e

            if not stream.active:
                stream.close()
                raise DeviceUnavailable("Input stream did not reach recording state")

            self._stream = stream
            self._pending = np.zeros(0, dtype=self._dtype)

        logger.info(
            "capture_opened",
            device=self.device,
            sample_rate=sample_rate,
            channels=channels,
            dtype=self._dtype,
        )

    def read(self, frames: int, timeout: float) -> Optional[np.ndarray]:
        stream = self._stream
        if stream is None:
            raise DeviceReadError("Capture device is not open", transient=False)
        if not stream.active:
            raise DeviceReadError("Input stream is no longer active", transient=False)

        collected = [self._pending] if self._pending.size else []
        have = self._pending.size
        wait = timeout
        while have < frames:
            try:
                block = self._blocks.get(timeout=wait)
            except queue.Empty:
                break
            collected.append(block)
            have += block.size
            # После первого блока ждём только то, что уже накоплено
            wait = 0.0

        if not collected:
            return None

        data = np.concatenate(collected)
        self._pending = data[frames:]
        return data[:frames]

    def close(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("capture_close_failed", error=str(e))
        finally:
            while not self._blocks.empty():
                self._blocks.get_nowait()
            self._pending = np.zeros(0, dtype=self._dtype)
        logger.info("capture_closed", device=self.device)
