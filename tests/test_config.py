"""Тесты настроек."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from speakerid.utils.config import Settings


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.window_size_samples == 32000
        assert s.hop_size_samples == 8000
        assert s.read_chunk_samples == s.hop_size_samples
        assert s.enrollment_target_windows == 20
        assert s.DEFAULT_SIMILARITY_THRESHOLD == pytest.approx(0.55)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SPEAKERID_WINDOW_SIZE_MS", "1000")
        monkeypatch.setenv("SPEAKERID_HOP_SIZE_MS", "250")
        s = Settings(_env_file=None)
        assert s.window_size_samples == 16000
        assert s.hop_size_samples == 4000

    def test_hop_larger_than_window_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, WINDOW_SIZE_MS=500, HOP_SIZE_MS=1000)

    @pytest.mark.parametrize("value", [-0.1, 1.5])
    def test_threshold_out_of_range_rejected(self, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, DEFAULT_SIMILARITY_THRESHOLD=value)

    def test_explicit_read_chunk(self):
        s = Settings(_env_file=None, READ_CHUNK_MS=20)
        assert s.read_chunk_samples == 320

    def test_env_settings_declared_via_model_config(self, monkeypatch):
        """Префикс окружения задан через model_config, а не устаревший class Config."""
        assert Settings.model_config["env_prefix"] == "SPEAKERID_"
        assert Settings.model_config["case_sensitive"] is True
        assert "Config" not in Settings.__dict__

        monkeypatch.setenv("SPEAKERID_EVENT_QUEUE_MAXSIZE", "64")
        assert Settings(_env_file=None).EVENT_QUEUE_MAXSIZE == 64

    def test_event_queue_bounded_by_default(self):
        assert Settings(_env_file=None).EVENT_QUEUE_MAXSIZE > 0

    def test_negative_event_queue_size_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, EVENT_QUEUE_MAXSIZE=-1)
