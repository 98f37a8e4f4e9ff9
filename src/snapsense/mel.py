"""Log-mel spectrogram pipeline feeding the CNN classifier.

Captured audio (48 kHz) is box-averaged down to the model rate, appended to
a rolling history capped at the model's excerpt length, then framed into a
`(n_mels, n_frames)` log-mel matrix:

    frame -> Hann window -> FFT magnitude -> mel filterbank
          -> 10*log10(e + 1e-8) -> clamp to [-80, 0] dB

The flattened matrix is normalized with the model's stored mean/std.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from snapsense.spectral import FFT, hann_window

LOG_EPS = 1e-8
DB_FLOOR = -80.0
DB_CEILING = 0.0


def hz_to_mel(hz):
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def mel_to_hz(mel):
    return 700.0 * (10.0 ** (np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


class MelFilterbank:
    """Triangular mel filterbank over FFT bins 0..n_fft/2.

    Filter centers are spaced evenly on the mel scale between `f_min` and
    `f_max` and mapped to fractional bin positions. Each filter rises
    linearly from its left neighbour's center to its own and falls to its
    right neighbour's center.
    """

    def __init__(
        self,
        n_mels: int = 64,
        n_fft: int = 1024,
        sample_rate: int = 16000,
        f_min: float = 0.0,
        f_max: Optional[float] = None,
    ):
        self.n_mels = n_mels
        self.n_fft = n_fft
        self.sample_rate = sample_rate
        self.f_min = f_min
        self.f_max = f_max if f_max is not None else sample_rate / 2.0
        self.n_bins = n_fft // 2 + 1

        weights = self._build()
        weights.setflags(write=False)
        self._weights = weights

    def _build(self) -> np.ndarray:
        bins = self.n_bins
        fb = np.zeros((self.n_mels, bins), dtype=np.float64)

        mel_min = float(hz_to_mel(self.f_min))
        mel_max = float(hz_to_mel(self.f_max))
        mel_centers = np.linspace(mel_min, mel_max, self.n_mels + 2)
        hz_centers = mel_to_hz(mel_centers)
        bin_centers = hz_centers / (self.sample_rate / 2.0) * (bins - 1)

        for m in range(1, self.n_mels + 1):
            left, center, right = bin_centers[m - 1], bin_centers[m], bin_centers[m + 1]
            f_left = int(math.floor(left))
            f_center = int(math.floor(center))
            f_right = int(math.floor(right))

            # floored edges can sit just left of the true center; clip at 0
            for k in range(f_left, f_center):
                fb[m - 1, k] = max(0.0, (k - left) / (center - left))
            for k in range(f_center, min(f_right, bins)):
                fb[m - 1, k] = max(0.0, (right - k) / (right - center))

        return fb

    @property
    def weights(self) -> np.ndarray:
        """Read-only filter matrix, shape (n_mels, n_fft/2 + 1)."""
        return self._weights

    def apply(self, magnitudes: np.ndarray) -> np.ndarray:
        """Project a magnitude spectrum (n_fft/2 + 1,) onto the mel bins."""
        if magnitudes.shape[-1] != self.n_bins:
            raise ValueError(
                f"Magnitude length {magnitudes.shape[-1]} != {self.n_bins} bins"
            )
        return self._weights @ magnitudes


class AudioHistory:
    """Rolling sample buffer that keeps the newest `capacity` samples."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._buf = np.zeros(capacity, dtype=np.float32)
        self._count = 0

    def __len__(self) -> int:
        return self._count

    @property
    def full(self) -> bool:
        return self._count >= self.capacity

    def extend(self, samples: np.ndarray):
        samples = np.asarray(samples, dtype=np.float32).ravel()
        if samples.size >= self.capacity:
            self._buf[:] = samples[-self.capacity:]
            self._count = self.capacity
            return

        keep = min(self._count, self.capacity - samples.size)
        # shift the newest `keep` samples to the front, drop the rest
        self._buf[:keep] = self._buf[self._count - keep : self._count]
        self._buf[keep : keep + samples.size] = samples
        self._count = keep + samples.size

    def samples(self) -> np.ndarray:
        return self._buf[: self._count].copy()

    def clear(self):
        self._count = 0


def downsample(block: np.ndarray, ratio: float) -> np.ndarray:
    """Box-average decimation by `ratio` (source rate / target rate).

    Produces int(len(block) / ratio) samples; output sample i averages
    int(ratio) input samples starting at int(i * ratio).
    """
    block = np.asarray(block, dtype=np.float32)
    if ratio <= 1.0:
        return block.copy()

    count = int(block.size / ratio)
    width = max(1, int(ratio))
    out = np.zeros(count, dtype=np.float32)
    for i in range(count):
        start = int(i * ratio)
        seg = block[start : start + width]
        out[i] = seg.mean() if seg.size else 0.0
    return out


@dataclass
class MelSettings:
    """Framing parameters shared with the CNN model metadata."""
    n_mels: int = 64
    n_fft: int = 1024
    hop: int = 256
    sample_rate: int = 16000
    excerpt_seconds: float = 0.64
    mean: float = 0.0
    std: float = 1.0

    @property
    def excerpt_samples(self) -> int:
        return int(self.excerpt_seconds * self.sample_rate)

    @property
    def n_frames(self) -> int:
        return int(self.excerpt_seconds * self.sample_rate / self.hop)


class MelSpectrogram:
    """Rolling history plus log-mel framing for one CNN deployment.

    Usage:
        mel = MelSpectrogram(MelSettings(mean=-55.0, std=12.0))
        mel.push(block, source_rate=48000)     # every tick
        if mel.ready:
            x = mel.features()                 # (n_mels * n_frames,)
    """

    def __init__(self, settings: Optional[MelSettings] = None):
        self.settings = settings or MelSettings()
        s = self.settings
        if s.n_frames <= 0:
            raise ValueError("Excerpt too short for a single hop")

        self.filterbank = MelFilterbank(s.n_mels, s.n_fft, s.sample_rate)
        self.history = AudioHistory(s.excerpt_samples)
        self._window = hann_window(s.n_fft)
        self._fft = FFT(s.n_fft)
        self._frame = np.zeros(s.n_fft, dtype=np.float64)
        self._log_mel = np.zeros((s.n_mels, s.n_frames), dtype=np.float32)

    @property
    def ready(self) -> bool:
        return self.history.full

    @property
    def shape(self) -> tuple[int, int]:
        return self.settings.n_mels, self.settings.n_frames

    def push(self, block: np.ndarray, source_rate: int):
        """Downsample a captured block to the model rate and append it."""
        ratio = source_rate / self.settings.sample_rate
        self.history.extend(downsample(block, ratio))

    def log_mel(self, wave: Optional[np.ndarray] = None) -> np.ndarray:
        """Log-mel matrix of `wave` (defaults to the current history).

        Returns:
            Array of shape (n_mels, n_frames), values in [-80, 0] dB.
        """
        s = self.settings
        if wave is None:
            wave = self.history.samples()
        wave = np.asarray(wave, dtype=np.float64)

        out = self._log_mel
        for f in range(s.n_frames):
            start = f * s.hop
            seg = wave[start : start + s.n_fft]
            self._frame[:] = 0.0
            self._frame[: seg.size] = seg
            self._frame *= self._window

            mel_energy = self.filterbank.apply(self._fft.magnitude(self._frame))
            db = 10.0 * np.log10(mel_energy + LOG_EPS)
            out[:, f] = np.clip(db, DB_FLOOR, DB_CEILING)

        return out.copy()

    def normalize(self, log_mel: np.ndarray) -> np.ndarray:
        """Flatten row-major (mel slow, frame fast) and standardize."""
        std = self.settings.std if self.settings.std != 0 else 1.0
        return ((log_mel.reshape(-1) - self.settings.mean) / std).astype(np.float32)

    def features(self) -> np.ndarray:
        return self.normalize(self.log_mel())

    def reset(self):
        self.history.clear()
