"""Frequency-domain level analysis for speaking detection.

Reproduces the byte frequency data of a Web Audio ``AnalyserNode``: a
Blackman-windowed FFT, exponential smoothing across frames, conversion to
decibels and linear mapping of [min_decibels, max_decibels] onto 0..255.
"""

import numpy as np
from numpy.typing import NDArray

from src.voice_room.config import SpeakingConfig

# Floor applied before log10 to keep silence finite
_MAGNITUDE_FLOOR = 1e-12


class FrequencyAnalyser:
    """Stateful analyser over successive blocks of time-domain samples.

    Thread-safety: This class is NOT thread-safe. Use from a single task.
    """

    def __init__(
        self,
        fft_size: int = 256,
        smoothing_time_constant: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ) -> None:
        self.fft_size = fft_size
        self.smoothing_time_constant = smoothing_time_constant
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels

        self._window = np.blackman(fft_size).astype(np.float64)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)

    @classmethod
    def from_config(cls, config: SpeakingConfig) -> "FrequencyAnalyser":
        return cls(
            fft_size=config.fft_size,
            smoothing_time_constant=config.smoothing_time_constant,
            min_decibels=config.min_decibels,
            max_decibels=config.max_decibels,
        )

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def reset(self) -> None:
        """Forget smoothing history."""
        self._smoothed[:] = 0.0

    def _latest_block(self, samples: NDArray[np.float32]) -> NDArray[np.float64]:
        block = np.asarray(samples, dtype=np.float64).reshape(-1)[-self.fft_size :]
        if block.size < self.fft_size:
            block = np.pad(block, (self.fft_size - block.size, 0))
        return block

    def byte_frequency_data(self, samples: NDArray[np.float32]) -> NDArray[np.uint8]:
        """Compute byte frequency data for the newest ``fft_size`` samples.

        Args:
            samples: Time-domain samples in [-1, 1]; shorter input is zero-padded

        Returns:
            ``frequency_bin_count`` values in 0..255
        """
        block = self._latest_block(samples) * self._window
        magnitude = np.abs(np.fft.rfft(block))[: self.frequency_bin_count] / self.fft_size

        k = self.smoothing_time_constant
        self._smoothed = k * self._smoothed + (1.0 - k) * magnitude

        decibels = 20.0 * np.log10(np.maximum(self._smoothed, _MAGNITUDE_FLOOR))
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = (decibels - self.min_decibels) * scale
        return np.clip(scaled, 0.0, 255.0).astype(np.uint8)

    def average_level(self, samples: NDArray[np.float32]) -> float:
        """Mean of the byte frequency data (0..255)."""
        return float(np.mean(self.byte_frequency_data(samples)))
