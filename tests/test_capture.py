"""Тесты SoundDeviceCapture и ResemblyzerEmbedder без реального железа и модели."""
from __future__ import annotations

import sys
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from speakerid.audio.capture import SoundDeviceCapture
from speakerid.errors import DeviceReadError, DeviceUnavailable, InferenceFailed
from speakerid.speaker.embedder import ResemblyzerEmbedder, generate_embedding


@pytest.fixture
def fake_sd():
    """Мок модуля sounddevice с активным InputStream."""
    module = MagicMock()
    stream = MagicMock()
    stream.active = True
    module.InputStream.return_value = stream
    with patch.dict(sys.modules, {"sounddevice": module}):
        yield module


def _block(*values, channels: int = 1) -> np.ndarray:
    return np.repeat(np.array(values, dtype=np.int16).reshape(-1, 1), channels, axis=1)


class TestSoundDeviceCapture:
    def test_open_configures_stream(self, fake_sd):
        capture = SoundDeviceCapture()
        capture.open(16000, 1, 16)

        kwargs = fake_sd.InputStream.call_args.kwargs
        assert kwargs["samplerate"] == 16000
        assert kwargs["dtype"] == "int16"
        fake_sd.InputStream.return_value.start.assert_called_once()

    def test_open_failure(self, fake_sd):
        fake_sd.InputStream.side_effect = OSError("no default input device")
        with pytest.raises(DeviceUnavailable):
            SoundDeviceCapture().open(16000, 1, 16)

    def test_stream_not_recording(self, fake_sd):
        fake_sd.InputStream.return_value.active = False
        with pytest.raises(DeviceUnavailable):
            SoundDeviceCapture().open(16000, 1, 16)

    def test_unsupported_bit_depth(self, fake_sd):
        with pytest.raises(DeviceUnavailable):
            SoundDeviceCapture().open(16000, 1, 24)

    def test_read_splits_and_keeps_remainder(self, fake_sd):
        capture = SoundDeviceCapture()
        capture.open(16000, 1, 16)
        capture._callback(_block(1, 2, 3), 3, None, None)

        np.testing.assert_array_equal(capture.read(2, 0.1), [1, 2])
        np.testing.assert_array_equal(capture.read(5, 0.01), [3])

    def test_read_timeout_returns_none(self, fake_sd):
        capture = SoundDeviceCapture()
        capture.open(16000, 1, 16)
        assert capture.read(4, 0.01) is None

    def test_stereo_downmixed(self, fake_sd):
        capture = SoundDeviceCapture()
        capture.open(16000, 2, 16)
        capture._callback(_block(10, 20, channels=2), 2, None, None)
        np.testing.assert_array_equal(capture.read(2, 0.1), [10, 20])

    def test_read_without_open(self):
        with pytest.raises(DeviceReadError) as exc:
            SoundDeviceCapture().read(4, 0.01)
        assert exc.value.transient is False

    def test_read_after_stream_died(self, fake_sd):
        capture = SoundDeviceCapture()
        capture.open(16000, 1, 16)
        fake_sd.InputStream.return_value.active = False
        with pytest.raises(DeviceReadError):
            capture.read(4, 0.01)

    def test_full_queue_drops_oldest(self, fake_sd):
        capture = SoundDeviceCapture(max_queued_blocks=2)
        capture.open(16000, 1, 16)
        for value in (1, 2, 3):
            capture._callback(_block(value), 1, None, None)
        np.testing.assert_array_equal(capture.read(2, 0.1), [2, 3])

    def test_close_is_safe_to_repeat(self, fake_sd):
        capture = SoundDeviceCapture()
        capture.open(16000, 1, 16)
        capture.close()
        capture.close()
        fake_sd.InputStream.return_value.close.assert_called_once()


class TestResemblyzerEmbedder:
    def test_embed_uses_encoder(self):
        encoder = MagicMock()
        encoder.embed_utterance.return_value = np.ones(256, dtype=np.float64)
        with patch("speakerid.speaker.embedder._encoder", encoder):
            out = ResemblyzerEmbedder().embed(np.zeros(32000, dtype=np.float32))
        assert out.dtype == np.float32
        assert out.shape == (256,)

    def test_only_16khz(self):
        with pytest.raises(ValueError):
            ResemblyzerEmbedder(sample_rate=8000)

    def test_missing_resemblyzer_is_inference_failure(self):
        with patch("speakerid.speaker.embedder._encoder", None), \
                patch.dict(sys.modules, {"resemblyzer": None}):
            with pytest.raises(InferenceFailed):
                generate_embedding(ResemblyzerEmbedder(), np.zeros(16, dtype=np.float32), expected_dim=256)

    def test_none_output_is_inference_failure(self):
        provider = MagicMock()
        provider.embed.return_value = None
        with pytest.raises(InferenceFailed):
            generate_embedding(provider, np.zeros(4, dtype=np.float32))
