"""
Z-score anomaly scoring.

Pure functions of (value, baseline): no clock, no I/O, no shared state, so the
same inputs always give the same result.
"""

import math
import sys
from dataclasses import asdict, dataclass
from typing import Any

from .models import BaselineStats

DEFAULT_EPSILON = 1e-9


@dataclass(frozen=True)
class ScoreResult:
    """Result of scoring one value against a baseline"""

    z_score: float
    score: float  # |z_score|, the severity score
    is_anomaly: bool
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def z_score(value: float, mean: float, stddev: float, epsilon: float = DEFAULT_EPSILON) -> float:
    """(value - mean) / max(stddev, epsilon)"""
    return (value - mean) / max(stddev, epsilon)


def score_sample(
    value: float,
    baseline: BaselineStats | None,
    threshold: float = 3.0,
    epsilon: float = DEFAULT_EPSILON,
) -> ScoreResult:
    """Score a value against a baseline

    Args:
        value: Observed metric value
        baseline: Current baseline of the metric (None if unknown)
        threshold: |z-score| above which the value is an anomaly
        epsilon: Floor applied to the stddev (constant signals)

    Returns:
        ScoreResult; an unlearned or missing baseline never yields an anomaly
    """
    if baseline is None or not baseline.is_learned:
        return ScoreResult(z_score=0.0, score=0.0, is_anomaly=False, threshold=threshold)

    z = z_score(value, baseline.mean, baseline.stddev, epsilon)
    if not math.isfinite(z):
        z = math.copysign(sys.float_info.max, z)
    score = abs(z)
    return ScoreResult(z_score=z, score=score, is_anomaly=score > threshold, threshold=threshold)


def severity_label(score: float, warning_score: float = 3.0, critical_score: float = 5.0) -> str:
    """Map a severity score to info / warning / critical"""
    if score >= critical_score:
        return "critical"
    elif score >= warning_score:
        return "warning"
    else:
        return "info"
