"""Loudness metering for raw 16-bit PCM buffers."""

from __future__ import annotations

import numpy as np

FULL_SCALE = 32768.0


def compute_level(buffer: bytes) -> float:
    """Return the RMS amplitude of ``buffer`` normalized to [0, 1].

    ``buffer`` holds interleaved little-endian signed 16-bit samples. An empty
    buffer yields 0.0 and a dangling odd byte is ignored.
    """
    usable = len(buffer) - (len(buffer) % 2)
    samples = np.frombuffer(buffer, dtype="<i2", count=usable // 2).astype(np.float64)
    mean_square = float(np.sum(np.square(samples))) / max(samples.size, 1)
    return min(float(np.sqrt(mean_square)) / FULL_SCALE, 1.0)
