"""
Self-learning anomaly detection engine.

- MetricHistory: bounded per-metric ring buffers
- BaselineStore: streaming (Welford) mean/stddev with outlier clipping
- score_sample: pure z-score scoring
- MonitoringService: single-writer state with lock-free snapshots
- PersistenceGateway: atomic JSON persistence of learned baselines
"""

from .baseline import BaselineStore, RunningBaseline
from .history import MetricHistory
from .models import (
    Anomaly,
    BaselineStats,
    MetricKind,
    MetricSample,
    MonitorConfig,
    MonitoringSnapshot,
    host_metric,
)
from .persistence import PersistenceGateway
from .scorer import ScoreResult, score_sample, severity_label
from .service import MonitoringService

__all__ = [
    "Anomaly",
    "BaselineStats",
    "BaselineStore",
    "MetricHistory",
    "MetricKind",
    "MetricSample",
    "MonitorConfig",
    "MonitoringService",
    "MonitoringSnapshot",
    "PersistenceGateway",
    "RunningBaseline",
    "ScoreResult",
    "host_metric",
    "score_sample",
    "severity_label",
]
