"""
Модуль захвата и обработки аудио: нормализация, кольцевой буфер окон, capture.
"""
from speakerid.audio.buffer import SlidingWindowBuffer
from speakerid.audio.capture import CaptureDevice, SoundDeviceCapture, always_granted
from speakerid.audio.normalizer import SampleNormalizer, normalize_pcm16

__all__ = [
    "SlidingWindowBuffer",
    "CaptureDevice",
    "SoundDeviceCapture",
    "always_granted",
    "SampleNormalizer",
    "normalize_pcm16",
]
