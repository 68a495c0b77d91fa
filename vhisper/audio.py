from __future__ import annotations

import struct
from collections.abc import Sequence
from typing import NamedTuple

import numpy as np

TARGET_SAMPLE_RATE = 16_000
SILENCE_PEAK = 0.001
QUIET_PEAK = 0.05
INT16_MAX = 32767


class Resampler:
    """Accumulator based decimation from a device rate to the target rate.

    The accumulator grows by ``1 / ratio`` per source frame and a sample is emitted each time it
    crosses 1.0. Its fractional part survives between calls so consecutive buffers never drift.
    """

    def __init__(self, source_rate: float, target_rate: float = TARGET_SAMPLE_RATE):
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError("Sample rates must be positive")
        self.source_rate = source_rate
        self.target_rate = target_rate
        self.ratio = source_rate / target_rate
        self.step = 1.0 / self.ratio
        self.accumulator = 0.0

    def reset(self) -> None:
        self.accumulator = 0.0

    def process(self, samples: np.ndarray | Sequence[float]) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float32)
        if samples.size == 0:
            return samples
        positions = self.accumulator + self.step * np.arange(1, samples.size + 1, dtype=np.float64)
        crossed = np.floor(positions).astype(np.int64)
        counts = np.diff(crossed, prepend=0)
        self.accumulator = float(positions[-1] - crossed[-1])
        return np.repeat(samples, counts)


def encode_pcm16le(samples: np.ndarray | Sequence[float]) -> bytes:
    samples = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (samples * INT16_MAX).astype("<i2").tobytes()


def decode_pcm16le(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / INT16_MAX


def wav_header(data_size: int, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """44 bytes RIFF/WAVE header for ``data_size`` bytes of PCM16 mono."""
    channels = 1
    bits_per_sample = 16
    block_align = channels * bits_per_sample // 8
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
        b"data",
        data_size,
    )


def encode_wav(samples: np.ndarray | Sequence[float], sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    payload = encode_pcm16le(samples)
    return wav_header(len(payload), sample_rate) + payload


class Quality:
    class Ok(NamedTuple):
        pass

    class Warning(NamedTuple):
        message: str

    class Error(NamedTuple):
        message: str

    Result = Ok | Warning | Error


def check_quality(samples: np.ndarray | Sequence[float]) -> Quality.Result:
    samples = np.asarray(samples, dtype=np.float32)
    if samples.size == 0:
        return Quality.Error("No audio data")
    return quality_from_peak(float(np.max(np.abs(samples))))


def peak_level(samples: np.ndarray | Sequence[float]) -> float:
    samples = np.asarray(samples, dtype=np.float32)
    return float(np.max(np.abs(samples))) if samples.size else 0.0


def quality_from_peak(peak: float) -> Quality.Result:
    if peak < SILENCE_PEAK:
        return Quality.Error("Audio is silent. Please check microphone permissions.")
    if peak < QUIET_PEAK:
        return Quality.Warning("Audio level is very low. Please speak louder or check microphone.")
    return Quality.Ok()
