"""Audio helper utilities."""
from __future__ import annotations

import hashlib
import math
import re
from datetime import datetime

import numpy as np

INT16_MAX = 2 ** 15 - 1
INT16_MIN = -2 ** 15

SAFE_TITLE_PATTERN = re.compile(r"[^a-z0-9_-]+")


def downmix_to_mono(block: np.ndarray, sample_rate: int = 48000) -> np.ndarray:
    """
    Combine a (frames, channels) float block into a single mono stream.

    For stereo, performs a short-term power-weighted mix:
      mono = (wL * L + wR * R) / (wL + wR)
    where w = RMS² of a 20 ms window, to avoid phase/comb filtering.

    Falls back to arithmetic average for >2 channels.
    """

    data = np.asarray(block, dtype=np.float32)
    if data.ndim == 1:
        return data
    if data.ndim != 2:
        raise ValueError("expected a (frames, channels) block")
    channels = data.shape[1]
    if channels == 1:
        return data[:, 0].copy()

    if channels == 2:
        window = max(1, int(sample_rate * 0.02))
        left = data[:, 0]
        right = data[:, 1]
        w_left = float(np.mean(np.square(left[:window]))) if left.size else 0.0
        w_right = float(np.mean(np.square(right[:window]))) if right.size else 0.0
        if w_left + w_right == 0.0:
            w_left = w_right = 1.0
        gain_left = w_left / (w_left + w_right)
        gain_right = w_right / (w_left + w_right)
        return (left * gain_left + right * gain_right).astype(np.float32)

    return data.mean(axis=1).astype(np.float32)


def rms(samples: np.ndarray) -> float:
    """Root-mean-square of float amplitudes; 0.0 for an empty block."""
    data = np.asarray(samples, dtype=np.float64)
    if data.size == 0:
        return 0.0
    return math.sqrt(float(np.mean(np.square(data))))


def volume_level(samples: np.ndarray, scale: float = 3.0) -> float:
    """Live meter estimate in [0, 1]; not used for anything but display."""
    return max(0.0, min(1.0, rms(samples) * scale))


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Map normalized floats to int16, clamping values outside [-1, 1].

    Negative values scale by 0x8000 and positive by 0x7fff so both ends of
    the range land exactly on the int16 limits without wrapping.
    """

    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * -INT16_MIN, clipped * INT16_MAX)
    return np.trunc(scaled).astype("<i2")


def resample_linear(samples: np.ndarray, rate_in: int, rate_out: int) -> np.ndarray:
    """Deterministic linear-interpolation resampler for mono float audio."""
    data = np.asarray(samples, dtype=np.float32)
    if rate_in <= 0 or rate_out <= 0:
        raise ValueError("sample rates must be positive")
    if rate_in == rate_out or data.size == 0:
        return data
    ratio = rate_in / rate_out
    out_len = int(math.floor(data.size / ratio))
    if out_len <= 0:
        return np.zeros(0, dtype=np.float32)
    positions = np.arange(out_len, dtype=np.float64) * ratio
    return np.interp(positions, np.arange(data.size, dtype=np.float64), data).astype(np.float32)


def content_digest(chunks) -> str:
    """MD5 hex digest over byte chunks in order."""
    digest = hashlib.md5()
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


def sanitize_title(title: str) -> str:
    slug = re.sub(r"\s+", "_", (title or "clip").strip().lower())
    slug = SAFE_TITLE_PATTERN.sub("", slug)
    return slug or "clip"


def build_clip_filename(title: str, extension: str = "mp3", *, when: datetime | None = None) -> str:
    """Return ``<slug>__YYYYMMDD-HHMM.<ext>`` for a finalized clip."""
    stamp = (when or datetime.now()).strftime("%Y%m%d-%H%M")
    return f"{sanitize_title(title)}__{stamp}.{extension.lstrip('.')}"


__all__ = [
    "build_clip_filename",
    "content_digest",
    "downmix_to_mono",
    "float_to_pcm16",
    "resample_linear",
    "rms",
    "sanitize_title",
    "volume_level",
]
