"""
Tests for z-score scoring.
"""

import math

import pytest

from src.monitoring.models import BaselineStats
from src.monitoring.scorer import score_sample, severity_label, z_score

LEARNED = BaselineStats(mean=10.0, stddev=2.0, sample_count=30, is_learned=True)


class TestZScore:
    """Tests for z_score and score_sample."""

    def test_z_score(self):
        assert z_score(16.0, 10.0, 2.0) == 3.0
        assert z_score(4.0, 10.0, 2.0) == -3.0

    def test_epsilon_floor(self):
        """A zero stddev is replaced by epsilon."""
        assert z_score(11.0, 10.0, 0.0, epsilon=0.5) == 2.0

    def test_unlearned_baseline_never_anomalous(self):
        """Unlearned or missing baselines score zero."""
        unlearned = BaselineStats(mean=10.0, stddev=0.0, sample_count=3, is_learned=False)

        for baseline in (None, unlearned):
            result = score_sample(1e6, baseline)
            assert result.score == 0.0
            assert result.is_anomaly is False

    def test_threshold_is_strict(self):
        """|z| equal to the threshold is not an anomaly."""
        assert not score_sample(16.0, LEARNED, threshold=3.0).is_anomaly
        assert score_sample(16.1, LEARNED, threshold=3.0).is_anomaly

    def test_negative_deviation(self):
        result = score_sample(0.0, LEARNED, threshold=3.0)

        assert result.z_score == -5.0
        assert result.score == 5.0
        assert result.is_anomaly

    def test_constant_baseline_is_finite(self):
        """A constant learned signal produces a finite score."""
        constant = BaselineStats(mean=5.0, stddev=0.0, sample_count=10, is_learned=True)

        assert score_sample(5.0, constant).score == 0.0
        result = score_sample(6.0, constant)
        assert math.isfinite(result.score)
        assert result.is_anomaly

    def test_overflow_is_clamped(self):
        huge = BaselineStats(mean=-1e308, stddev=0.0, sample_count=10, is_learned=True)

        result = score_sample(1e308, huge, epsilon=1e-9)

        assert math.isfinite(result.z_score)
        assert result.z_score > 0

    def test_deterministic(self):
        assert score_sample(17.0, LEARNED) == score_sample(17.0, LEARNED)


class TestSeverityLabel:
    """Tests for severity_label."""

    @pytest.mark.parametrize(
        "score,label",
        [(0.5, "info"), (3.0, "warning"), (4.9, "warning"), (5.0, "critical"), (50.0, "critical")],
    )
    def test_default_tiers(self, score, label):
        assert severity_label(score) == label

    def test_custom_tiers(self):
        assert severity_label(2.0, warning_score=1.5, critical_score=2.5) == "warning"
