"""Общие утилиты: конфигурация и логирование."""
from speakerid.utils.config import Settings, settings
from speakerid.utils.logging import get_logger, setup_logging

__all__ = ["Settings", "settings", "get_logger", "setup_logging"]
