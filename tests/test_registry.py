"""Тесты реестра спикеров и персистентного порога."""
from __future__ import annotations

import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from conftest import DIM
from speakerid.errors import EmbeddingDimensionMismatch, InvalidName, PersistenceFailure
from speakerid.speaker.registry import (
    ENABLED_KEY,
    THRESHOLD_KEY,
    PersistedScalar,
    SimilarityThreshold,
    SpeakerRegistry,
)
from speakerid.speaker.storage import SQLiteProfileStore


def _vec(*values) -> np.ndarray:
    return np.array(values, dtype=np.float32)


@pytest.fixture
def registry(store) -> SpeakerRegistry:
    return SpeakerRegistry(store, DIM)


class TestSpeakerRegistry:
    def test_save_and_reload(self, registry, db_path):
        registry.save("Alice", _vec(1, 0, 0, 0))
        registry.save("Bob", _vec(0, 1, 0, 0))

        fresh = SpeakerRegistry(SQLiteProfileStore(db_path), DIM)
        assert fresh.load() == 2
        assert fresh.names() == ["Alice", "Bob"]
        np.testing.assert_array_equal(fresh.get("Bob").embedding, _vec(0, 1, 0, 0))

    def test_overwrite_is_last_write_wins_and_keeps_position(self, registry, db_path):
        """Повторное сохранение имени заменяет embedding, порядок сохраняется."""
        registry.save("Alice", _vec(1, 0, 0, 0))
        registry.save("Bob", _vec(0, 1, 0, 0))
        registry.save("Alice", _vec(0, 0, 1, 0))

        assert registry.names() == ["Alice", "Bob"]
        np.testing.assert_array_equal(registry.get("Alice").embedding, _vec(0, 0, 1, 0))

        fresh = SpeakerRegistry(SQLiteProfileStore(db_path), DIM)
        fresh.load()
        assert fresh.names() == ["Alice", "Bob"]
        np.testing.assert_array_equal(fresh.get("Alice").embedding, _vec(0, 0, 1, 0))

    def test_dimension_mismatch_rejected(self, registry):
        with pytest.raises(EmbeddingDimensionMismatch):
            registry.save("Alice", np.ones(DIM + 1, dtype=np.float32))
        assert registry.is_empty()

    def test_empty_name_rejected(self, registry):
        with pytest.raises(InvalidName):
            registry.save("  ", _vec(1, 0, 0, 0))

    def test_delete(self, registry):
        registry.save("Alice", _vec(1, 0, 0, 0))
        assert registry.delete("Alice") is True
        assert registry.delete("Alice") is False
        assert "Alice" not in registry

    def test_delete_many_and_clear(self, registry):
        for name in ("Alice", "Bob", "Carol"):
            registry.save(name, _vec(1, 0, 0, 0))
        assert registry.delete_many(["Alice", "Nobody", "Carol"]) == 2
        assert registry.names() == ["Bob"]
        registry.clear()
        assert len(registry) == 0

    def test_load_coerces_and_skips_bad_records(self, db_path):
        """Битые записи пропускаются при загрузке, остальные приводятся к float32."""
        store = MagicMock()
        store.read_all.return_value = {
            "Nested": [[1.0, 2.0, 3.0, 4.0]],
            "Short": [1.0, 2.0],
            "Long": [1.0, 2.0, 3.0, 4.0, 5.0],
            "Broken": ["a", "b", "c", "d"],
        }
        registry = SpeakerRegistry(store, DIM)
        assert registry.load() == 3
        np.testing.assert_array_equal(registry.get("Short").embedding, _vec(1, 2, 0, 0))
        np.testing.assert_array_equal(registry.get("Long").embedding, _vec(1, 2, 3, 4))
        assert "Broken" not in registry

    def test_load_failure_propagates(self):
        store = MagicMock()
        store.read_all.side_effect = PersistenceFailure("disk gone")
        with pytest.raises(PersistenceFailure):
            SpeakerRegistry(store, DIM).load()

    def test_persistence_failure_keeps_profile_in_memory(self):
        """Сбой записи пробрасывается, но профиль в памяти уже сохранён."""
        store = MagicMock()
        store.write_all.side_effect = PersistenceFailure("read-only")
        registry = SpeakerRegistry(store, DIM)

        with pytest.raises(PersistenceFailure):
            registry.save("Alice", _vec(1, 0, 0, 0))
        assert registry.exists("Alice")

    def test_concurrent_saves_all_persisted(self, registry, db_path):
        """Параллельные регистрации не теряют записи друг друга."""
        names = [f"speaker_{i}" for i in range(16)]
        threads = [threading.Thread(target=registry.save, args=(n, _vec(1, 0, 0, 0))) for n in names]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        fresh = SpeakerRegistry(SQLiteProfileStore(db_path), DIM)
        assert fresh.load() == len(names)
        assert set(fresh.names()) == set(names)

    def test_profiles_snapshot_not_affected_by_later_changes(self, registry):
        registry.save("Alice", _vec(1, 0, 0, 0))
        snapshot = registry.profiles()
        registry.save("Bob", _vec(0, 1, 0, 0))
        assert [p.name for p in snapshot] == ["Alice"]


class TestPersistedScalars:
    def test_threshold_default_and_persist(self, store):
        threshold = SimilarityThreshold(store, 0.55)
        assert threshold.load() == pytest.approx(0.55)
        threshold.set(0.8)

        fresh = SimilarityThreshold(store, 0.55)
        assert fresh.load() == pytest.approx(0.8)
        assert store.read_scalar(THRESHOLD_KEY) == pytest.approx(0.8)

    @pytest.mark.parametrize("requested,applied", [(-0.3, 0.0), (1.7, 1.0), (0.0, 0.0), (1.0, 1.0)])
    def test_threshold_clamped(self, store, requested, applied):
        threshold = SimilarityThreshold(store, 0.55)
        assert threshold.set(requested) == applied
        assert threshold.value == applied

    def test_threshold_accepts_inclusive(self, store):
        threshold = SimilarityThreshold(store, 0.5)
        assert threshold.accepts(0.5)
        assert not threshold.accepts(0.4999)

    def test_out_of_range_stored_value_clamped_on_load(self, store):
        """Значение вне диапазона из хранилища ограничивается при загрузке."""
        store.write_scalar(THRESHOLD_KEY, 3.0)
        assert SimilarityThreshold(store, 0.55).load() == 1.0

    def test_write_failure_keeps_memory_value(self):
        store = MagicMock()
        store.write_scalar.side_effect = PersistenceFailure("read-only")
        scalar = PersistedScalar(store, ENABLED_KEY, 1.0, lower=0.0, upper=1.0)
        with pytest.raises(PersistenceFailure):
            scalar.set(0.0)
        assert scalar.value == 0.0

    def test_load_failure_keeps_default(self):
        store = MagicMock()
        store.read_scalar.side_effect = PersistenceFailure("locked")
        assert SimilarityThreshold(store, 0.6).load() == pytest.approx(0.6)

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_value_rejected(self, store, bad):
        """NaN не должен превращаться в порог 0.0, принимающий любого спикера."""
        threshold = SimilarityThreshold(store, 0.55)
        threshold.set(0.7)
        with pytest.raises(ValueError):
            threshold.set(bad)
        assert threshold.value == pytest.approx(0.7)
        assert store.read_scalar(THRESHOLD_KEY) == pytest.approx(0.7)

    def test_non_finite_stored_value_ignored_on_load(self):
        store = MagicMock()
        store.read_scalar.return_value = float("nan")
        assert SimilarityThreshold(store, 0.6).load() == pytest.approx(0.6)
