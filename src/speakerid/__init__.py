"""speakerid: распознавание спикеров в реальном времени.

Микрофон → нормализация → скользящие окна → embedding → косинусное
сходство с реестром → события MATCH / NO_MATCH / регистрации.
"""
from speakerid.engine import RecognitionEngine
from speakerid.errors import ErrorKind, SpeakerIdError
from speakerid.events import EventChannel, EventDispatcher, EventKind, RecognitionEvent

__version__ = "0.1.0"

__all__ = [
    "RecognitionEngine",
    "ErrorKind",
    "SpeakerIdError",
    "EventChannel",
    "EventDispatcher",
    "EventKind",
    "RecognitionEvent",
    "__version__",
]
