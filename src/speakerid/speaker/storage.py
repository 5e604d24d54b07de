"""SQLite-хранилище профилей спикеров и скалярных настроек.

Таблицы:
- speaker_profiles: name → embedding (JSON-массив float32 значений), порядок
  регистрации хранится в position
- speaker_settings: key → REAL (порог сходства, флаг включения и т.п.)

Хранилище не умеет обновлять одну запись: write_all() переписывает всю
коллекцию в одной транзакции. Формат на диске фиксирован: float32,
записанный как JSON-числа; при чтении каждый элемент явно приводится
к float, а размерность проверяется в coerce_embedding().
"""
from __future__ import annotations

import json
import math
import numbers
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol

import numpy as np

from speakerid.errors import PersistenceFailure
from speakerid.utils.logging import get_logger

logger = get_logger("speaker.storage")

STORAGE_DTYPE = "float32"


class ProfileStore(Protocol):
    """Персистентное key-value хранилище реестра."""

    def read_all(self) -> Dict[str, object]:
        """name → сериализованный embedding (как он лежит на диске), в порядке регистрации."""
        ...

    def write_all(self, profiles: Mapping[str, np.ndarray]) -> None:
        """Полностью переписывает коллекцию. Raises PersistenceFailure."""
        ...

    def read_scalar(self, key: str, default: Optional[float] = None) -> Optional[float]:
        ...

    def write_scalar(self, key: str, value: float) -> None:
        ...


def coerce_embedding(raw: object, dim: int, name: str = "") -> Optional[np.ndarray]:
    """Приводит сериализованный embedding к float32 вектору длины dim.

    - вложенный формат [[...]] разворачивается;
    - каждый элемент приводится к float явно, bool/строки/None отклоняются;
    - длина != dim: лишнее отрезается, недостающее добивается нулями;
    - NaN/inf: запись отклоняется.

    Returns:
        np.ndarray(dim,) float32 или None, если запись не восстановить.
    """
    values = raw
    if isinstance(values, (list, tuple)) and len(values) == 1 and isinstance(values[0], (list, tuple)):
        values = values[0]
    if not isinstance(values, (list, tuple)):
        logger.warning("profile_embedding_not_array", name=name, type=type(raw).__name__)
        return None

    out = np.zeros(dim, dtype=np.float32)
    for i, item in enumerate(values[:dim]):
        if isinstance(item, bool) or not isinstance(item, numbers.Real):
            logger.warning("profile_embedding_bad_element", name=name, index=i, value=repr(item))
            return None
        as_float = float(item)
        if not math.isfinite(as_float):
            logger.warning("profile_embedding_not_finite", name=name, index=i)
            return None
        out[i] = np.float32(as_float)

    if len(values) != dim:
        logger.warning(
            "profile_embedding_resized",
            name=name,
            stored_dim=len(values),
            expected_dim=dim,
        )
    out.setflags(write=False)
    return out


class SQLiteProfileStore:
    """ProfileStore поверх sqlite3 (новое соединение на каждую операцию)."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.ensure_tables()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=5.0)

    def ensure_tables(self) -> None:
        """Создаёт таблицы, если их нет. Идемпотентно."""
        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot open store {self.db_path}: {e}") from e
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS speaker_profiles (
                    name TEXT PRIMARY KEY,
                    position INTEGER NOT NULL,
                    embedding_json TEXT NOT NULL,
                    dim INTEGER NOT NULL,
                    dtype TEXT NOT NULL DEFAULT 'float32',
                    updated_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS speaker_settings (
                    key TEXT PRIMARY KEY,
                    value REAL NOT NULL
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot create tables in {self.db_path}: {e}") from e
        finally:
            conn.close()

    def read_all(self) -> Dict[str, object]:
        if not self.db_path.exists():
            return {}

        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot open store {self.db_path}: {e}") from e
        try:
            rows = conn.execute(
                "SELECT name, embedding_json FROM speaker_profiles ORDER BY position, rowid"
            ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read profiles: {e}") from e
        finally:
            conn.close()

        result: Dict[str, object] = {}
        for name, embedding_json in rows:
            try:
                result[name] = json.loads(embedding_json)
            except (TypeError, ValueError) as e:
                logger.warning("profile_json_corrupt", name=name, error=str(e))
        logger.debug("profiles_read", count=len(result), db=str(self.db_path))
        return result

    def write_all(self, profiles: Mapping[str, np.ndarray]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        rows: List[tuple] = []
        for position, (name, embedding) in enumerate(profiles.items()):
            vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
            rows.append((name, position, json.dumps(vec.tolist()), int(vec.size), STORAGE_DTYPE, now))

        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot open store {self.db_path}: {e}") from e
        try:
            with conn:
                conn.execute("DELETE FROM speaker_profiles")
                conn.executemany(
                    """
                    INSERT INTO speaker_profiles (name, position, embedding_json, dim, dtype, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except sqlite3.Error as e:
            logger.error("profiles_write_failed", count=len(rows), error=str(e))
            raise PersistenceFailure(f"Cannot write profiles: {e}") from e
        finally:
            conn.close()
        logger.info("profiles_written", count=len(rows), db=str(self.db_path))

    def read_scalar(self, key: str, default: Optional[float] = None) -> Optional[float]:
        if not self.db_path.exists():
            return default
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM speaker_settings WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            logger.warning("scalar_read_failed", key=key, error=str(e))
            return default
        finally:
            conn.close()
        return float(row[0]) if row else default

    def write_scalar(self, key: str, value: float) -> None:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot open store {self.db_path}: {e}") from e
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO speaker_settings (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    (key, float(value)),
                )
        except sqlite3.Error as e:
            logger.error("scalar_write_failed", key=key, error=str(e))
            raise PersistenceFailure(f"Cannot write setting {key}: {e}") from e
        finally:
            conn.close()
        logger.debug("scalar_written", key=key, value=float(value))
