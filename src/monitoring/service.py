"""
Monitoring service: owns the metric history and the baselines.

Writers (the sampling loop, retrain/feedback requests) are serialised by a
single lock that is only held for in-memory work. After every write a new
immutable MonitoringSnapshot is assembled and published by swapping one
reference; readers call snapshot() without taking the lock and always see a
complete, consistent state.
"""

import dataclasses
import math
import threading
from collections import deque
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Iterable

import structlog

from src.core.errors import StateError, ValidationError

from .baseline import BaselineStore, RunningBaseline
from .history import MetricHistory
from .models import (
    THREAT_METRIC,
    Anomaly,
    MetricKind,
    MetricSample,
    MonitorConfig,
    MonitoringSnapshot,
    utc_now,
)
from .scorer import score_sample, severity_label

logger = structlog.get_logger(__name__)


def feedback_key(metric_name: str, value: float) -> str:
    """Key under which a false positive is remembered ("cpu-97")"""
    return f"{metric_name}-{value:.0f}"


class MonitoringService:
    """Ingests samples, learns baselines and emits anomalies"""

    def __init__(
        self,
        config: MonitorConfig,
        store: BaselineStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()

        self._history = MetricHistory(config.window_size)
        self._store = store if store is not None else BaselineStore()
        self._anomalies: deque[Anomaly] = deque(maxlen=config.recent_anomalies)
        self._safe_mode: set[str] = set()
        self._health: dict[str, str] = {}

        self.stats = {
            "total_samples": 0,
            "rejected_samples": 0,
            "failed_samples": 0,
            "clipped_samples": 0,
            "anomalies_detected": 0,
            "suppressed_by_feedback": 0,
            "threats_reported": 0,
            "state_errors": 0,
        }

        self._snapshot = self._build_snapshot()

        logger.info(
            "Monitoring service initialized",
            window_size=config.window_size,
            anomaly_threshold=config.anomaly_threshold,
            min_samples=config.min_samples,
            learning_period_seconds=config.learning_period_seconds,
            known_metrics=len(self._store),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def sample_and_update(self, sample: MetricSample) -> Anomaly | None:
        """Record a sample and score it against the metric's baseline

        Returns:
            An Anomaly if the metric is learned and |z| exceeds the threshold

        Raises:
            ValidationError: if the sample names an unknown metric kind
        """
        with self._lock:
            try:
                anomaly = self._apply(sample)
            except ValidationError:
                self.stats["rejected_samples"] += 1
                raise
            finally:
                self._publish()
        return anomaly

    def update_many(self, samples: Iterable[MetricSample]) -> list[Anomaly]:
        """Apply one sampling cycle; a bad sample never blocks the others"""
        anomalies = []
        with self._lock:
            try:
                for sample in samples:
                    metric = getattr(sample, "metric_name", None)
                    try:
                        anomaly = self._apply(sample)
                    except ValidationError as e:
                        self.stats["rejected_samples"] += 1
                        logger.warning("Rejected sample", metric=metric, error=str(e))
                        continue
                    except Exception as e:
                        self.stats["failed_samples"] += 1
                        logger.error(
                            "Error processing sample", metric=metric, error=str(e), exc_info=True
                        )
                        continue
                    if anomaly is not None:
                        anomalies.append(anomaly)
            finally:
                self._publish()
        return anomalies

    def begin_learning_period(self, duration: float | timedelta | None = None) -> None:
        """Forget every baseline and learn again

        Args:
            duration: Learning period (seconds or timedelta); defaults to the
                configured learning_period_seconds
        """
        with self._lock:
            if duration is not None:
                seconds = (
                    duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
                )
                if seconds < 0:
                    raise ValueError("Learning period must be >= 0")
                self.config = dataclasses.replace(self.config, learning_period_seconds=seconds)
            self._store.reset()
            self._safe_mode.clear()
            self._publish()

        logger.info(
            "Learning period started",
            duration_seconds=self.config.learning_period_seconds,
            min_samples=self.config.min_samples,
        )

    def retrain(self) -> int:
        """Recompute baselines now from the samples in the history window

        Returns:
            Number of metrics that ended up learned
        """
        now = self._clock()
        learned = 0
        with self._lock:
            for name in self._history.names():
                baseline = RunningBaseline.from_values(
                    self._history.values(name), now, self.config.min_samples
                )
                if baseline is None:
                    continue
                self._store.baselines[name] = baseline
                self._safe_mode.discard(name)
                learned += int(baseline.is_learned)
            self._publish()

        logger.info("Baselines retrained from history", learned=learned)
        return learned

    def report_threat(self, address: str, reason: str | None = None) -> Anomaly:
        """Record an offending address reported by an external source

        The address is carried verbatim; it is validated by the dispatcher
        before any action uses it.
        """
        with self._lock:
            anomaly = Anomaly(
                metric_name=THREAT_METRIC,
                observed_value=self.config.threat_score,
                baseline_mean=0.0,
                baseline_stddev=0.0,
                severity_score=self.config.threat_score,
                detected_at=self._clock(),
                source=address,
                safe_mode=THREAT_METRIC in self._safe_mode,
            )
            self._anomalies.append(anomaly)
            self.stats["threats_reported"] += 1
            self._publish()

        logger.warning("Threat reported", source=address, reason=reason)
        return anomaly

    def mark_false_positive(self, metric_name: str, value: float) -> str:
        """Suppress future anomalies for this metric at this (rounded) value"""
        MetricKind.from_metric_name(metric_name)
        key = feedback_key(metric_name, value)
        with self._lock:
            self._store.feedback.add(key)
            self._publish()
        logger.info("False positive recorded", key=key)
        return key

    def clear_feedback(self) -> None:
        with self._lock:
            self._store.feedback.clear()
            self._publish()

    def reset_safe_mode(self, metric_name: str) -> None:
        """Leave safe mode for a metric; its baseline is learned again"""
        with self._lock:
            self._safe_mode.discard(metric_name)
            self._store.reset(metric_name)
            self._publish()
        logger.info("Safe mode reset", metric=metric_name)

    def set_health(self, component: str, reason: str | None) -> None:
        """Mark a component degraded (reason) or healthy (None)"""
        with self._lock:
            if reason is None:
                if self._health.pop(component, None) is None:
                    return
            else:
                if self._health.get(component) == reason:
                    return
                self._health[component] = reason
            self._publish()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> MonitoringSnapshot:
        """Last published snapshot; safe to call from any thread"""
        return self._snapshot

    def export_baseline(self) -> BaselineStore:
        """Detached copy of the baselines, built from the published snapshot"""
        snapshot = self._snapshot
        return BaselineStore.from_stats(snapshot.baselines, snapshot.feedback)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _apply(self, sample: MetricSample) -> Anomaly | None:
        kind = sample.kind
        if kind is MetricKind.THREAT:
            raise ValidationError("Threat samples must go through report_threat")
        name = sample.metric_name
        # Samples built without MetricSample.create skip its checks
        if not isinstance(sample.value, (int, float)) or not math.isfinite(sample.value):
            raise ValidationError(f"Invalid value for {name}: {sample.value!r}")
        if not isinstance(sample.timestamp, datetime) or sample.timestamp.tzinfo is None:
            raise ValidationError(f"Sample for {name} needs a timezone-aware timestamp")

        self.stats["total_samples"] += 1
        self._history.append(sample)
        baseline = self._store.get_or_create(name)

        try:
            if not baseline.is_learned:
                self._learn(name, baseline, sample)
                return None
            return self._score(name, baseline, sample)
        except StateError as e:
            self.stats["state_errors"] += 1
            if name not in self._safe_mode:
                self._safe_mode.add(name)
                logger.critical(
                    "Baseline invariant violated, metric in safe mode",
                    metric=name,
                    error=str(e),
                )
            return None

    def _learn(self, name: str, baseline: RunningBaseline, sample: MetricSample) -> None:
        restarts = baseline.restarts
        if not baseline.observe(sample.value, sample.timestamp, self.config):
            self.stats["clipped_samples"] += 1
            logger.debug("Outlier excluded from baseline", metric=name, value=sample.value)
        elif baseline.restarts != restarts:
            logger.info("Level shift while learning, baseline restarted", metric=name)

        stats = baseline.stats().validate(name)
        if baseline.try_complete(sample.timestamp, self.config):
            logger.info(
                "Baseline learned",
                metric=name,
                mean=round(stats.mean, 3),
                stddev=round(stats.stddev, 3),
                samples=stats.sample_count,
                clipped=baseline.clipped,
            )

    def _score(self, name: str, baseline: RunningBaseline, sample: MetricSample) -> Anomaly | None:
        stats = baseline.stats().validate(name)
        result = score_sample(
            sample.value, stats, self.config.anomaly_threshold, self.config.epsilon
        )
        if not result.is_anomaly:
            return None

        if feedback_key(name, sample.value) in self._store.feedback:
            self.stats["suppressed_by_feedback"] += 1
            return None

        anomaly = Anomaly(
            metric_name=name,
            observed_value=sample.value,
            baseline_mean=stats.mean,
            baseline_stddev=stats.stddev,
            severity_score=result.score,
            detected_at=self._clock(),
            source=sample.source,
            safe_mode=name in self._safe_mode,
        )
        self._anomalies.append(anomaly)
        self.stats["anomalies_detected"] += 1

        logger.info(
            "Anomaly detected",
            metric=name,
            severity=severity_label(
                result.score, self.config.warning_score, self.config.critical_score
            ),
            score=round(result.score, 3),
            actual=round(sample.value, 2),
            expected=round(stats.mean, 2),
            z_score=round(result.z_score, 4),
        )
        return anomaly

    def _build_snapshot(self) -> MonitoringSnapshot:
        history = {name: self._history.recent(name) for name in self._history.names()}
        return MonitoringSnapshot(
            taken_at=self._clock(),
            latest=MappingProxyType(
                {name: samples[-1] for name, samples in history.items() if samples}
            ),
            history=MappingProxyType(history),
            baselines=MappingProxyType(self._store.to_stats()),
            recent_anomalies=tuple(self._anomalies),
            feedback=frozenset(self._store.feedback),
            safe_mode=frozenset(self._safe_mode),
            health=MappingProxyType(dict(self._health)),
        )

    def _publish(self) -> None:
        self._snapshot = self._build_snapshot()
