"""Output loudness meter."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import numpy as np

SampleSource = Callable[[], np.ndarray]


def _blackman(size: int) -> np.ndarray:
    n = np.arange(size, dtype=np.float64)
    return (
        0.42
        - 0.5 * np.cos(2.0 * np.pi * n / size)
        + 0.08 * np.cos(4.0 * np.pi * n / size)
    )


class VolumeMeter:
    """Analyser-style level in ``[0, 1]``.

    Each reading windows the newest ``fft_size`` output samples, takes the
    smoothed magnitude spectrum, maps it to bytes between ``min_db`` and
    ``max_db`` and averages the bins.
    """

    def __init__(
        self,
        source: Optional[SampleSource] = None,
        fft_size: int = 256,
        min_db: float = -100.0,
        max_db: float = -30.0,
        smoothing: float = 0.8,
    ) -> None:
        self.source = source
        self.fft_size = fft_size
        self.min_db = min_db
        self.max_db = max_db
        self.smoothing = smoothing
        self._window = _blackman(fft_size)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)

    def byte_frequency_data(self, samples: np.ndarray) -> np.ndarray:
        block = np.zeros(self.fft_size, dtype=np.float64)
        tail = np.asarray(samples, dtype=np.float64).reshape(-1)[-self.fft_size:]
        block[self.fft_size - tail.size:] = tail
        spectrum = np.fft.rfft(block * self._window)[: self.fft_size // 2]
        magnitude = np.abs(spectrum) / self.fft_size
        self._smoothed = (
            self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
        )
        decibels = 20.0 * np.log10(np.maximum(self._smoothed, 1e-12))
        scaled = 255.0 * (decibels - self.min_db) / (self.max_db - self.min_db)
        return np.clip(np.floor(scaled), 0.0, 255.0)

    def level(self, samples: np.ndarray) -> float:
        data = self.byte_frequency_data(samples)
        return float(np.mean(data) / 255.0)

    def sample(self) -> float:
        if self.source is None:
            return 0.0
        return self.level(self.source())

    def reset(self) -> None:
        self._smoothed[:] = 0.0

    async def run(self, on_level: Callable[[float], None], interval_s: float = 1 / 30) -> None:
        """Sample on a fixed cadence until cancelled."""
        while True:
            on_level(self.sample())
            await asyncio.sleep(interval_s)
