"""
Fixed-capacity per-metric ring buffers of recent samples.
"""

from collections import deque

import numpy as np

from .models import MetricSample


class MetricHistory:
    """Most recent `capacity` samples for each metric, in arrival order"""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._buffers: dict[str, deque[MetricSample]] = {}

    def append(self, sample: MetricSample) -> None:
        """Append a sample, evicting the oldest one once capacity is reached"""
        buffer = self._buffers.get(sample.metric_name)
        if buffer is None:
            buffer = deque(maxlen=self.capacity)
            self._buffers[sample.metric_name] = buffer
        buffer.append(sample)

    def recent(self, metric_name: str) -> tuple[MetricSample, ...]:
        return tuple(self._buffers.get(metric_name, ()))

    def latest(self, metric_name: str) -> MetricSample | None:
        buffer = self._buffers.get(metric_name)
        return buffer[-1] if buffer else None

    def values(self, metric_name: str) -> np.ndarray:
        """Window values as a float array (empty if the metric is unknown)"""
        buffer = self._buffers.get(metric_name, ())
        return np.fromiter((s.value for s in buffer), dtype=float, count=len(buffer))

    def names(self) -> list[str]:
        return list(self._buffers)

    def clear(self, metric_name: str | None = None) -> None:
        if metric_name is None:
            self._buffers.clear()
        else:
            self._buffers.pop(metric_name, None)

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, metric_name: str) -> bool:
        return metric_name in self._buffers
