from __future__ import annotations

import threading


class FixedRatioSampler:
    """Deterministic sampler that fires on a fixed fraction of pulses.

    ``pulse()`` returns True whenever the running sample rate is below the
    configured ratio, so ratio 1.0 fires every time and 0.0 never does.
    """

    def __init__(self, ratio: float):
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"Sampling ratio must be within [0, 1], got {ratio}")
        self._ratio = float(ratio)
        self._num_pulses = 0
        self._num_samples = 0
        self._lock = threading.Lock()

    @property
    def ratio(self) -> float:
        return self._ratio

    def pulse(self) -> bool:
        with self._lock:
            self._num_pulses += 1
            if self._num_samples / self._num_pulses < self._ratio:
                self._num_samples += 1
                return True
            return False

    def debug_string(self) -> str:
        with self._lock:
            if self._num_pulses == 0:
                return "0 (0/0)"
            pct = 100.0 * self._num_samples / self._num_pulses
            return f"{pct:.1f}% ({self._num_samples}/{self._num_pulses})"
