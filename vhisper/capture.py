from __future__ import annotations

import threading

import numpy as np
import sounddevice as sd

from .audio import TARGET_SAMPLE_RATE, Resampler
from .errors import DeviceError
from .log import debug


class AudioCapture:
    """Microphone capture at the device native rate, resampled to mono 16 kHz floats.

    The sounddevice callback runs on the audio thread while ``drain_buffer`` is called from the
    event loop, so the resampler and the buffer are only touched under ``_lock``.
    """

    BLOCK_DURATION_MS = 40
    MAX_CHANNELS = 2

    def __init__(self, target_sample_rate: int = TARGET_SAMPLE_RATE, device: int | str | None = None):
        self.target_sample_rate = target_sample_rate
        self.device = device
        self.device_sample_rate: float | None = None
        self._lock = threading.Lock()
        self._buffer: list[np.ndarray] = []
        self._resampler: Resampler | None = None
        self._stream = None

    @property
    def is_recording(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return
        try:
            info = sd.query_devices(self.device, kind="input")
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceError(f"No input device available ({exc})") from exc
        sample_rate = float(info.get("default_samplerate") or 0)
        if sample_rate <= 0:
            raise DeviceError(f"Input device {info.get('name', '?')!r} reports a zero sample rate")
        channels = max(1, min(int(info.get("max_input_channels") or 1), self.MAX_CHANNELS))

        with self._lock:
            self._buffer.clear()
            self._resampler = Resampler(sample_rate, self.target_sample_rate)

        try:
            stream = sd.InputStream(
                samplerate=sample_rate,
                blocksize=int(sample_rate * self.BLOCK_DURATION_MS / 1000),
                dtype="float32",
                channels=channels,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            with self._lock:
                self._resampler = None
            raise DeviceError(f"Unable to open input device ({exc})") from exc

        self.device_sample_rate = sample_rate
        self._stream = stream
        debug(f"Audio capture started: {info.get('name', '?')} at {sample_rate:.0f} Hz, {channels} channel(s)")

    def drain_buffer(self) -> np.ndarray:
        with self._lock:
            return self._take_buffer()

    def stop(self) -> np.ndarray:
        self._close_stream()
        with self._lock:
            samples = self._take_buffer()
            if self._resampler is not None:
                self._resampler.reset()
        return samples

    def cancel(self) -> None:
        self._close_stream()
        with self._lock:
            self._buffer.clear()
            if self._resampler is not None:
                self._resampler.reset()

    def _take_buffer(self) -> np.ndarray:
        if not self._buffer:
            return np.zeros(0, dtype=np.float32)
        samples = np.concatenate(self._buffer)
        self._buffer.clear()
        return samples

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            debug(f"Error while closing input stream: {exc}")

    def _callback(self, indata, frames, timeinfo, status):
        if status:
            debug(f"Audio input status: {status}")
        data = np.asarray(indata, dtype=np.float32)
        mono = data.mean(axis=1) if data.ndim > 1 else data
        with self._lock:
            if self._resampler is None:
                return
            resampled = self._resampler.process(mono)
            if resampled.size:
                self._buffer.append(resampled)
