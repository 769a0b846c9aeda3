"""
Streaming baseline statistics.

Each metric keeps a Welford accumulator (count, mean, M2) so the mean and the
variance are updated in O(1) per sample without storing the samples. Learning
completes once the learning period has elapsed since the metric's first sample
and at least `min_samples` values were accepted. After the warm-up, values
further than `outlier_sigma` spreads from the running mean are not accumulated,
so a single extreme reading during learning cannot skew the baseline. When more
than `outlier_max_consecutive` values in a row would be clipped the signal has
changed level, and accumulation restarts from the current value.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Mapping

import numpy as np

from .models import BaselineStats, MonitorConfig


@dataclass
class RunningBaseline:
    """Online mean/variance accumulator and learning state for one metric"""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    started_at: datetime | None = None
    learned_at: datetime | None = None
    is_learned: bool = False
    clipped: int = 0
    consecutive_clipped: int = 0
    restarts: int = 0

    @property
    def stddev(self) -> float:
        if self.count < 1:
            return 0.0
        # Guard against tiny negative M2 from floating point cancellation
        return math.sqrt(max(self.m2, 0.0) / self.count)

    def is_outlier(self, value: float, config: MonitorConfig) -> bool:
        if config.outlier_sigma is None or self.count < config.outlier_warmup:
            return False
        spread = max(self.stddev, abs(self.mean) * config.outlier_relative_floor, config.epsilon)
        return abs(value - self.mean) > config.outlier_sigma * spread

    def observe(self, value: float, timestamp: datetime, config: MonitorConfig) -> bool:
        """Accumulate a value while learning

        Returns:
            True if the value was accumulated, False if it was clipped
        """
        if self.started_at is None:
            self.started_at = timestamp
        if self.is_outlier(value, config):
            if self.consecutive_clipped < config.outlier_max_consecutive:
                self.clipped += 1
                self.consecutive_clipped += 1
                return False
            self.count = 0
            self.mean = 0.0
            self.m2 = 0.0
            self.restarts += 1
        self.consecutive_clipped = 0

        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)
        return True

    def try_complete(self, now: datetime, config: MonitorConfig) -> bool:
        """Mark the baseline learned once period and sample count are satisfied"""
        if self.is_learned:
            return False
        if self.started_at is None or self.count < config.min_samples:
            return False
        if now - self.started_at < timedelta(seconds=config.learning_period_seconds):
            return False
        self.is_learned = True
        self.learned_at = now
        return True

    def stats(self) -> BaselineStats:
        return BaselineStats(
            mean=self.mean,
            stddev=self.stddev,
            sample_count=self.count,
            learned_at=self.learned_at,
            is_learned=self.is_learned,
        )

    @classmethod
    def from_stats(cls, stats: BaselineStats) -> "RunningBaseline":
        return cls(
            count=stats.sample_count,
            mean=stats.mean,
            m2=stats.stddev**2 * stats.sample_count,
            learned_at=stats.learned_at,
            is_learned=stats.is_learned,
        )

    @classmethod
    def from_values(
        cls, values: np.ndarray, now: datetime, min_samples: int
    ) -> "RunningBaseline | None":
        """Batch-compute a baseline from a window of values (population stddev)"""
        if values.size == 0:
            return None
        mean = float(np.mean(values))
        variance = float(np.var(values))
        learned = values.size >= min_samples
        return cls(
            count=int(values.size),
            mean=mean,
            m2=variance * values.size,
            started_at=now,
            learned_at=now if learned else None,
            is_learned=learned,
        )


@dataclass
class BaselineStore:
    """Baselines for every known metric plus false-positive feedback keys"""

    baselines: dict[str, RunningBaseline] = field(default_factory=dict)
    feedback: set[str] = field(default_factory=set)

    def get(self, metric_name: str) -> RunningBaseline | None:
        return self.baselines.get(metric_name)

    def get_or_create(self, metric_name: str) -> RunningBaseline:
        baseline = self.baselines.get(metric_name)
        if baseline is None:
            baseline = RunningBaseline()
            self.baselines[metric_name] = baseline
        return baseline

    def reset(self, metric_name: str | None = None) -> None:
        """Forget learned statistics (all metrics, or a single one)"""
        if metric_name is None:
            for name in list(self.baselines):
                self.baselines[name] = RunningBaseline()
        else:
            self.baselines[metric_name] = RunningBaseline()

    def is_learned(self, metric_name: str) -> bool:
        baseline = self.baselines.get(metric_name)
        return baseline is not None and baseline.is_learned

    def to_stats(self) -> dict[str, BaselineStats]:
        return {name: baseline.stats() for name, baseline in self.baselines.items()}

    @classmethod
    def from_stats(
        cls, stats: Mapping[str, BaselineStats], feedback: Iterable[str] = ()
    ) -> "BaselineStore":
        return cls(
            baselines={name: RunningBaseline.from_stats(s) for name, s in stats.items()},
            feedback=set(feedback),
        )

    def __len__(self) -> int:
        return len(self.baselines)
