"""Tests for AudioCapture, with sounddevice replaced by a fake."""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

try:
    from vhisper import capture
except OSError:  # PortAudio library missing on this host
    pytest.skip("PortAudio is not available", allow_module_level=True)

from vhisper.errors import DeviceError


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------


class FakePortAudioError(Exception):
    pass


class FakeInputStream:
    instances: list[FakeInputStream] = []

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.started = False
        self.closed = False
        FakeInputStream.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def close(self) -> None:
        self.closed = True


def make_fake_sd(device_info: dict | None = None, query_error: Exception | None = None) -> SimpleNamespace:
    def query_devices(device=None, kind=None):
        if query_error is not None:
            raise query_error
        return device_info

    return SimpleNamespace(
        query_devices=query_devices,
        InputStream=FakeInputStream,
        PortAudioError=FakePortAudioError,
    )


@pytest.fixture(autouse=True)
def reset_streams():
    FakeInputStream.instances = []
    yield


@pytest.fixture
def fake_sd(monkeypatch):
    fake = make_fake_sd({"name": "Fake mic", "default_samplerate": 48000.0, "max_input_channels": 2})
    monkeypatch.setattr(capture, "sd", fake)
    return fake


# ---------------------------------------------------------------
# Tests
# ---------------------------------------------------------------


def test_start_opens_stream_at_device_rate(fake_sd) -> None:
    audio = capture.AudioCapture()
    audio.start()

    assert audio.is_recording
    assert audio.device_sample_rate == 48000.0
    (stream,) = FakeInputStream.instances
    assert stream.started
    assert stream.kwargs["samplerate"] == 48000.0
    assert stream.kwargs["channels"] == 2
    assert stream.kwargs["dtype"] == "float32"
    assert stream.kwargs["blocksize"] == 1920


def test_start_is_idempotent(fake_sd) -> None:
    audio = capture.AudioCapture()
    audio.start()
    audio.start()
    assert len(FakeInputStream.instances) == 1


def test_callback_mixes_to_mono_and_resamples(fake_sd) -> None:
    audio = capture.AudioCapture()
    audio.start()

    stereo = np.zeros((960, 2), dtype=np.float32)
    stereo[:, 0] = 0.4
    stereo[:, 1] = 0.2
    audio._callback(stereo, 960, None, None)

    samples = audio.drain_buffer()
    assert len(samples) == 320
    assert np.allclose(samples, 0.3)
    assert len(audio.drain_buffer()) == 0


def test_stop_returns_remaining_samples_and_resets(fake_sd) -> None:
    audio = capture.AudioCapture()
    audio.start()
    audio._callback(np.full((3, 1), 0.5, dtype=np.float32), 3, None, None)
    audio._callback(np.full((1, 1), 0.5, dtype=np.float32), 1, None, None)

    samples = audio.stop()

    assert len(samples) == 1
    assert not audio.is_recording
    assert FakeInputStream.instances[0].closed
    assert audio._resampler.accumulator == 0.0


def test_cancel_discards_buffer(fake_sd) -> None:
    audio = capture.AudioCapture()
    audio.start()
    audio._callback(np.full((300, 1), 0.5, dtype=np.float32), 300, None, None)

    audio.cancel()

    assert not audio.is_recording
    assert len(audio.drain_buffer()) == 0


def test_cancel_without_start_is_noop(fake_sd) -> None:
    audio = capture.AudioCapture()
    audio.cancel()
    assert len(audio.stop()) == 0


def test_no_input_device_raises_device_error(monkeypatch) -> None:
    monkeypatch.setattr(capture, "sd", make_fake_sd(query_error=ValueError("No input device matching")))
    with pytest.raises(DeviceError, match="No input device"):
        capture.AudioCapture().start()


def test_zero_sample_rate_raises_device_error(monkeypatch) -> None:
    monkeypatch.setattr(capture, "sd", make_fake_sd({"name": "Broken", "default_samplerate": 0, "max_input_channels": 1}))
    audio = capture.AudioCapture()
    with pytest.raises(DeviceError, match="zero sample rate"):
        audio.start()
    assert not audio.is_recording
