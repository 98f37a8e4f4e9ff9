"""Spectral feature extraction for fixed-size audio blocks.

Each tick, one audio block is Hann-windowed, transformed with a radix-2 FFT
and summarized into a handful of band statistics:

- low-band energy (sum of squared magnitudes, default ~0-600 Hz)
- high-band magnitude vector and energy (default ~1-8 kHz)
- spectral centroid of the high band (in bins, relative to the band start)
- high-band RMS, time-domain RMS (raw and Hann-windowed) and spectral flatness

These feed the adaptive noise gate and the logistic-regression backend.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

EPS = 1e-6


def hann_window(n: int) -> np.ndarray:
    """Symmetric Hann window: 0.5 - 0.5*cos(2*pi*i/(n-1))."""
    if n < 2:
        return np.ones(n, dtype=np.float64)
    i = np.arange(n, dtype=np.float64)
    return 0.5 - 0.5 * np.cos(2.0 * np.pi * i / (n - 1))


def is_power_of_two(n: int) -> bool:
    return n >= 2 and (n & (n - 1)) == 0


class FFT:
    """Iterative radix-2 FFT with per-instance scratch space.

    The bit-reversal permutation and the twiddle factors of every stage
    (lengths 2, 4, ..., n) are computed once at construction. Each call
    permutes the input into the workspace, then runs the butterfly merges
    stage by stage.

    Usage:
        fft = FFT(1024)
        bins = fft.transform(samples)      # n complex bins
        mags = fft.magnitude(samples)      # n/2 + 1 magnitudes
    """

    def __init__(self, n: int):
        if not is_power_of_two(n):
            raise ValueError(f"FFT size must be a power of two >= 2, got {n}")

        self.n = n
        bits = n.bit_length() - 1
        idx = np.arange(n)
        rev = np.zeros(n, dtype=np.intp)
        for b in range(bits):
            rev |= ((idx >> b) & 1) << (bits - 1 - b)
        self._bitrev = rev

        self._twiddles: list[np.ndarray] = []
        length = 2
        while length <= n:
            half = length // 2
            self._twiddles.append(np.exp(-2j * np.pi * np.arange(half) / length))
            length <<= 1

        self._work = np.zeros(n, dtype=np.complex128)

    def transform(self, x: np.ndarray, inverse: bool = False) -> np.ndarray:
        """Transform `x` (length n, real or complex).

        Args:
            x: Input samples, shape (n,).
            inverse: Run the inverse transform (scaled by 1/n).

        Returns:
            Complex spectrum, shape (n,). A fresh array; the workspace is
            reused by the next call.
        """
        x = np.asarray(x)
        if x.shape != (self.n,):
            raise ValueError(f"Expected input of shape ({self.n},), got {x.shape}")

        work = self._work
        work[:] = x[self._bitrev]

        for twiddle in self._twiddles:
            half = twiddle.size
            w = np.conj(twiddle) if inverse else twiddle
            # rows are independent butterfly groups of length 2*half
            groups = work.reshape(-1, 2 * half)
            u = groups[:, :half].copy()
            v = groups[:, half:] * w
            groups[:, :half] = u + v
            groups[:, half:] = u - v

        if inverse:
            work /= self.n

        return work.copy()

    def magnitude(self, real: np.ndarray) -> np.ndarray:
        """Magnitude spectrum (first n/2 + 1 bins) of a real signal."""
        spectrum = self.transform(real)
        return np.abs(spectrum[: self.n // 2 + 1])


@dataclass(frozen=True)
class BandLayout:
    """Bin ranges of the low and high analysis bands.

    The low band is inclusive on both ends; the high band is half-open
    ([high_start, high_stop)), so its vector length is high_stop - high_start.
    """
    low_start: int
    low_stop: int
    high_start: int
    high_stop: int

    @property
    def high_size(self) -> int:
        return self.high_stop - self.high_start

    @classmethod
    def from_hz(
        cls,
        sample_rate: int,
        block_size: int,
        low_hz: tuple[float, float] = (0.0, 600.0),
        high_hz: tuple[float, float] = (1000.0, 8000.0),
    ) -> BandLayout:
        """Map frequency ranges to bin indices for a given block size."""
        bin_hz = sample_rate / block_size

        def to_bin(hz: float) -> int:
            return int(round(hz / bin_hz))

        return cls.from_bins(
            block_size,
            (to_bin(low_hz[0]), to_bin(low_hz[1])),
            (to_bin(high_hz[0]), to_bin(high_hz[1])),
        )

    @classmethod
    def from_bins(
        cls,
        block_size: int,
        low_bins: tuple[int, int],
        high_bins: tuple[int, int],
    ) -> BandLayout:
        """Build a layout from explicit bin indices, clipped to Nyquist."""
        nyquist = block_size // 2
        low_start = max(0, int(low_bins[0]))
        low_stop = min(nyquist, int(low_bins[1]))
        high_start = max(0, int(high_bins[0]))
        high_stop = min(nyquist + 1, int(high_bins[1]))

        if low_stop < low_start:
            raise ValueError(f"Empty low band: bins {low_bins} at block size {block_size}")
        if high_stop <= high_start:
            raise ValueError(f"Empty high band: bins {high_bins} at block size {block_size}")

        return cls(low_start, low_stop, high_start, high_stop)


@dataclass
class SpectralFeatures:
    """Band statistics of one audio block."""
    low_band_energy: float
    high_band_vector: np.ndarray
    high_band_energy: float
    spectral_centroid: float  # bins, relative to the high band start
    high_band_rms: float
    time_rms: float  # raw block
    spectral_flatness: float
    windowed_rms: float = 0.0  # Hann-windowed block

    def band_ratio(self, log10: bool = False) -> float:
        """High/low band energy ratio, optionally as log10."""
        if log10:
            return math.log10((self.high_band_energy + EPS) / (self.low_band_energy + EPS))
        return self.high_band_energy / (self.low_band_energy + EPS)


def spectral_flatness(magnitudes: np.ndarray) -> float:
    """Geometric over arithmetic mean of a magnitude vector (1 = white, 0 = tonal)."""
    if magnitudes.size == 0:
        return 0.0
    geometric = math.exp(float(np.mean(np.log(magnitudes + EPS))))
    arithmetic = float(np.mean(magnitudes))
    return geometric / (arithmetic + EPS)


class SpectralAnalyzer:
    """Computes `SpectralFeatures` for blocks of a fixed size.

    The Hann window, FFT tables and the windowing buffer belong to the
    instance and are reused between calls. No other state survives a call.
    """

    def __init__(
        self,
        sample_rate: int = 48000,
        block_size: int = 1024,
        layout: Optional[BandLayout] = None,
    ):
        if not is_power_of_two(block_size):
            raise ValueError(f"Block size must be a power of two, got {block_size}")

        self.sample_rate = sample_rate
        self.block_size = block_size
        self.layout = layout or BandLayout.from_hz(sample_rate, block_size)
        self._window = hann_window(block_size)
        self._windowed = np.zeros(block_size, dtype=np.float64)
        self._fft = FFT(block_size)

    @property
    def bin_hz(self) -> float:
        return self.sample_rate / self.block_size

    def analyze(self, block: np.ndarray) -> SpectralFeatures:
        """Window, transform and summarize one block.

        Args:
            block: Mono samples in [-1, 1], shape (block_size,).

        Returns:
            SpectralFeatures. Silent input yields zeros, never NaN.
        """
        block = np.asarray(block, dtype=np.float64)
        if block.shape != (self.block_size,):
            raise ValueError(
                f"Expected block of {self.block_size} samples, got shape {block.shape}"
            )

        time_rms = float(np.sqrt(np.mean(block * block)))

        np.multiply(block, self._window, out=self._windowed)
        windowed_rms = float(np.sqrt(np.mean(self._windowed * self._windowed)))
        magnitudes = self._fft.magnitude(self._windowed)

        lay = self.layout
        low = magnitudes[lay.low_start : lay.low_stop + 1]
        high = magnitudes[lay.high_start : lay.high_stop].copy()

        low_energy = float(np.sum(low * low))
        high_energy = float(np.sum(high * high))

        k = np.arange(high.size, dtype=np.float64)
        centroid = float(np.sum(k * high) / (np.sum(high) + EPS))

        return SpectralFeatures(
            low_band_energy=low_energy,
            high_band_vector=high,
            high_band_energy=high_energy,
            spectral_centroid=centroid,
            high_band_rms=math.sqrt(high_energy / high.size),
            time_rms=time_rms,
            spectral_flatness=spectral_flatness(high),
            windowed_rms=windowed_rms,
        )
