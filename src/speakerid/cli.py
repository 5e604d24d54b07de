"""Командная строка: python -m speakerid <command>.

Команды:
    listen                  распознавание с микрофона до Ctrl+C
    enroll NAME [--seconds] регистрация спикера с микрофона
    list                    зарегистрированные спикеры
    delete NAME / clear     обслуживание реестра
    threshold [VALUE]       показать / установить порог сходства
    stats                   статистика хранилища
"""
from __future__ import annotations

import argparse
import json
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from speakerid import __version__
from speakerid.engine import RecognitionEngine
from speakerid.errors import SpeakerIdError
from speakerid.events import EventDispatcher, EventKind, RecognitionEvent
from speakerid.speaker.embedder import ResemblyzerEmbedder
from speakerid.speaker.registry import SimilarityThreshold, SpeakerRegistry
from speakerid.speaker.storage import SQLiteProfileStore
from speakerid.utils.config import Settings, settings
from speakerid.utils.logging import get_logger, setup_logging

logger = get_logger("cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def build_engine(config: Settings) -> RecognitionEngine:
    """Движок с микрофоном по умолчанию и resemblyzer."""
    return RecognitionEngine(
        embedder=ResemblyzerEmbedder(sample_rate=config.SAMPLE_RATE),
        config=config,
    )


def format_event(event: RecognitionEvent) -> str:
    """Однострочное представление события для консоли."""
    kind = event.kind
    if kind == EventKind.MATCH:
        return f"match: {event.name} ({event.score:.3f})"
    if kind == EventKind.NO_MATCH:
        score = "-" if event.score is None else f"{event.score:.3f}"
        return f"no match (best {score})"
    if kind == EventKind.ENROLLMENT_PROGRESS:
        return f"enrolling {event.name}: {event.windows_collected}/{event.target_windows}"
    if kind == EventKind.ENROLLMENT_COMPLETE:
        return f"enrollment {'complete' if event.success else 'failed'}: {event.name}"
    if kind == EventKind.ENROLLMENT_STARTED:
        return f"enrollment started: {event.name}"
    if kind == EventKind.ERROR:
        error_kind = event.error_kind.value if event.error_kind is not None else "unknown"
        return f"error [{error_kind}]: {event.message}"
    if kind == EventKind.ENGINE_STOPPED and event.message:
        return f"engine stopped: {event.message}"
    return kind.value.replace("_", " ")


def _print_event(event: RecognitionEvent) -> None:
    print(format_event(event), flush=True)


# ═══════════════════════════════════════════════════════════════════════════
# Команды
# ═══════════════════════════════════════════════════════════════════════════

def cmd_listen(config: Settings, args: argparse.Namespace) -> int:
    engine = build_engine(config)
    dispatcher = EventDispatcher(engine.events, _print_event)
    dispatcher.start()
    try:
        engine.start()
        while engine.is_active:
            time.sleep(0.2)
        # Worker завершился сам: фатальная ошибка устройства
        return EXIT_ERROR
    finally:
        engine.close()
        dispatcher.stop()


def cmd_enroll(config: Settings, args: argparse.Namespace) -> int:
    if args.seconds is not None:
        config = config.model_copy(update={"ENROLLMENT_DURATION_SEC": args.seconds})

    engine = build_engine(config)
    done = threading.Event()

    def on_event(event: RecognitionEvent) -> None:
        _print_event(event)
        if event.kind == EventKind.ENROLLMENT_COMPLETE:
            done.set()

    unsubscribe = engine.events.subscribe(on_event)
    try:
        engine.begin_enrollment(args.name)
        engine.start()
        # Запас сверху: окна приходят с шагом hop, последнее может опоздать
        limit = config.ENROLLMENT_DURATION_SEC + config.WINDOW_SIZE_MS / 1000 + config.READ_TIMEOUT_SEC * 2
        if not done.wait(limit):
            logger.warning("enrollment_wait_timeout", limit=limit)
            engine.end_enrollment()
        engine.enrollment.wait_pending(config.STOP_JOIN_TIMEOUT_SEC)
        result = engine.enrollment.last_result
    finally:
        engine.close()
        unsubscribe()

    if result is None or not result.success:
        message = result.message if result is not None else "enrollment did not finish"
        print(f"Enrollment of {args.name!r} failed: {message}", file=sys.stderr)
        return EXIT_ERROR
    print(f"Enrolled {result.name!r} from {result.embeddings_used}/{result.windows_collected} windows")
    return EXIT_OK


def _open_registry(config: Settings) -> tuple[SQLiteProfileStore, SpeakerRegistry]:
    store = SQLiteProfileStore(config.DB_PATH)
    registry = SpeakerRegistry(store, config.EMBEDDING_DIM)
    registry.load()
    return store, registry


def cmd_list(config: Settings, args: argparse.Namespace) -> int:
    _, registry = _open_registry(config)
    names = registry.names()
    if not names:
        print("No enrolled speakers")
    for name in names:
        print(name)
    return EXIT_OK


def cmd_delete(config: Settings, args: argparse.Namespace) -> int:
    _, registry = _open_registry(config)
    if not registry.delete(args.name):
        print(f"Speaker {args.name!r} not found", file=sys.stderr)
        return EXIT_ERROR
    print(f"Deleted {args.name!r}")
    return EXIT_OK


def cmd_clear(config: Settings, args: argparse.Namespace) -> int:
    _, registry = _open_registry(config)
    count = len(registry)
    registry.clear()
    print(f"Deleted {count} speaker(s)")
    return EXIT_OK


def cmd_threshold(config: Settings, args: argparse.Namespace) -> int:
    store = SQLiteProfileStore(config.DB_PATH)
    threshold = SimilarityThreshold(store, config.DEFAULT_SIMILARITY_THRESHOLD)
    threshold.load()
    if args.value is not None:
        threshold.set(args.value)
    print(f"{threshold.value:.3f}")
    return EXIT_OK


def cmd_stats(config: Settings, args: argparse.Namespace) -> int:
    store, registry = _open_registry(config)
    threshold = SimilarityThreshold(store, config.DEFAULT_SIMILARITY_THRESHOLD)
    threshold.load()
    stats = {
        "db_path": str(config.DB_PATH),
        "speakers": len(registry),
        "names": registry.names(),
        "embedding_dim": registry.embedding_dim,
        "threshold": threshold.value,
        "window_size_ms": config.WINDOW_SIZE_MS,
        "hop_size_ms": config.HOP_SIZE_MS,
        "sample_rate": config.SAMPLE_RATE,
    }
    print(json.dumps(stats, indent=2, ensure_ascii=False))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="speakerid", description="Real-time speaker recognition")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", type=Path, default=None, help="Path to the profile database")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")

    sub = parser.add_subparsers(dest="command", required=True)

    listen = sub.add_parser("listen", help="Recognize speakers from the microphone")
    listen.set_defaults(func=cmd_listen)

    enroll = sub.add_parser("enroll", help="Enroll a speaker from the microphone")
    enroll.add_argument("name")
    enroll.add_argument("--seconds", type=float, default=None, help="Enrollment duration")
    enroll.set_defaults(func=cmd_enroll)

    sub.add_parser("list", help="List enrolled speakers").set_defaults(func=cmd_list)

    delete = sub.add_parser("delete", help="Delete an enrolled speaker")
    delete.add_argument("name")
    delete.set_defaults(func=cmd_delete)

    sub.add_parser("clear", help="Delete all enrolled speakers").set_defaults(func=cmd_clear)

    threshold = sub.add_parser("threshold", help="Show or set the similarity threshold")
    threshold.add_argument("value", type=float, nargs="?", default=None)
    threshold.set_defaults(func=cmd_threshold)

    sub.add_parser("stats", help="Show store statistics").set_defaults(func=cmd_stats)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    config = settings
    if args.db is not None:
        config = config.model_copy(update={"DB_PATH": args.db})

    try:
        return args.func(config, args)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except (SpeakerIdError, ValueError) as e:
        logger.error("command_failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
