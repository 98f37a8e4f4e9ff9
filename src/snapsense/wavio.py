"""16-bit PCM mono WAV clips.

Clips are peak-normalized on write: the loudest sample is scaled to 0.9 of
full scale, unless the clip is near-silent (peak below 1e-4), in which case
it is written as is.
"""

from __future__ import annotations

import logging
import wave
from pathlib import Path

import numpy as np

logger = logging.getLogger("snapsense.wavio")

TARGET_PEAK = 0.9
SILENCE_PEAK = 1e-4


def normalize_peak(samples: np.ndarray) -> np.ndarray:
    samples = np.asarray(samples, dtype=np.float64).ravel()
    peak = float(np.max(np.abs(samples))) if samples.size else 0.0
    gain = TARGET_PEAK / peak if peak >= SILENCE_PEAK else 1.0
    return samples * gain


def write_wav(
    samples: np.ndarray,
    sample_rate: int,
    path: str | Path,
    normalize: bool = True,
) -> Path:
    """Write mono float samples as a 16-bit PCM WAV file.

    Args:
        samples: Mono samples, nominally in [-1, 1]; clipped on conversion.
        sample_rate: Sample rate in Hz stored in the header.
        path: Destination file.
        normalize: Apply peak normalization first.

    Returns:
        The written path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = normalize_peak(samples) if normalize else np.asarray(samples, dtype=np.float64).ravel()
    pcm = np.round(np.clip(data, -1.0, 1.0) * 32767.0).astype("<i2")

    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm.tobytes())

    logger.debug("Wrote %d samples to %s", pcm.size, path)
    return path


def read_wav(path: str | Path) -> tuple[np.ndarray, int]:
    """Read a 16-bit PCM WAV file.

    Multi-channel files are mixed down to mono.

    Returns:
        (samples as float32 in [-1, 1], sample_rate)
    """
    path = Path(path)
    with wave.open(str(path), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"{path}: only 16-bit PCM is supported, got {8 * wf.getsampwidth()}-bit")
        channels = wf.getnchannels()
        sample_rate = wf.getframerate()
        raw = wf.readframes(wf.getnframes())

    pcm = np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        pcm = pcm.reshape(-1, channels).mean(axis=1)
    return pcm, sample_rate
