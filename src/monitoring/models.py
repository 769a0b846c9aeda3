"""
Data models and configuration for the monitoring engine.
"""

import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from src.core.errors import StateError, ValidationError

HOST_PREFIX = "host:"
THREAT_METRIC = "threat"


class MetricKind(Enum):
    """Closed set of metric kinds the engine accepts"""

    CPU = "cpu"
    RAM = "ram"
    DISK = "disk"
    TEMPERATURE = "temp"
    PING = "ping"
    NET_CONNECTIONS = "net"
    FAILED_LOGINS = "fail"
    HOST_LATENCY = "host"
    THREAT = "threat"

    @classmethod
    def from_metric_name(cls, metric_name: str) -> "MetricKind":
        """Resolve the kind of a metric name ("cpu", "host:8.8.8.8", ...)"""
        if metric_name.startswith(HOST_PREFIX):
            if len(metric_name) == len(HOST_PREFIX):
                raise ValidationError("Host metric without host name")
            return cls.HOST_LATENCY
        try:
            kind = cls(metric_name)
        except ValueError:
            raise ValidationError(f"Unknown metric '{metric_name}'") from None
        if kind is cls.HOST_LATENCY:
            raise ValidationError("Host metrics must be named 'host:<hostname>'")
        return kind

    @property
    def is_percentage(self) -> bool:
        return self in (MetricKind.CPU, MetricKind.RAM, MetricKind.DISK)

    @property
    def is_counter(self) -> bool:
        return self in (MetricKind.NET_CONNECTIONS, MetricKind.FAILED_LOGINS)

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    MetricKind.CPU: "CPU",
    MetricKind.RAM: "RAM",
    MetricKind.DISK: "Disk",
    MetricKind.TEMPERATURE: "Temp",
    MetricKind.PING: "Ping",
    MetricKind.NET_CONNECTIONS: "Connections",
    MetricKind.FAILED_LOGINS: "Failed Login",
    MetricKind.HOST_LATENCY: "Host",
    MetricKind.THREAT: "Threat IP",
}


def host_metric(host: str) -> str:
    """Metric name for the latency of a monitored host"""
    return f"{HOST_PREFIX}{host}"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class MonitorConfig:
    """Configuration for the monitoring engine"""

    window_size: int = 60  # samples kept per metric
    learning_period_seconds: float = 300.0
    min_samples: int = 10
    anomaly_threshold: float = 3.0  # |z-score| cutoff
    epsilon: float = 1e-9  # stddev floor for scoring

    # Outlier clipping while learning
    outlier_sigma: float | None = 4.0
    outlier_warmup: int = 5
    outlier_relative_floor: float = 0.05  # fraction of |mean| used as minimum spread
    outlier_max_consecutive: int = 10  # more clips in a row means the level moved

    recent_anomalies: int = 50
    threat_score: float = 10.0  # severity assigned to reported threat addresses

    # Severity labels (info < warning_score <= warning < critical_score <= critical)
    warning_score: float = 3.0
    critical_score: float = 5.0

    def __post_init__(self):
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")
        if self.min_samples < 1:
            raise ValueError("min_samples must be >= 1")
        if self.anomaly_threshold <= 0:
            raise ValueError("anomaly_threshold must be > 0")
        if self.epsilon <= 0:
            raise ValueError("epsilon must be > 0")
        if self.outlier_max_consecutive < 1:
            raise ValueError("outlier_max_consecutive must be >= 1")


@dataclass(frozen=True)
class MetricSample:
    """A single point-in-time reading"""

    metric_name: str
    value: float
    timestamp: datetime
    source: Optional[str] = None

    @property
    def kind(self) -> MetricKind:
        return MetricKind.from_metric_name(self.metric_name)

    @classmethod
    def create(
        cls,
        metric_name: str,
        value: float,
        timestamp: datetime | None = None,
        source: str | None = None,
    ) -> "MetricSample":
        """Validate a raw reading and build a sample

        Raises:
            ValidationError: unknown metric, non-numeric or out of range value
        """
        kind = MetricKind.from_metric_name(metric_name)
        if kind is MetricKind.THREAT:
            raise ValidationError("Threats are reported, not sampled")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Non-numeric value for {metric_name}: {value!r}") from None
        if not math.isfinite(number):
            raise ValidationError(f"Non-finite value for {metric_name}: {value!r}")
        if kind.is_percentage and not 0.0 <= number <= 100.0:
            raise ValidationError(f"{metric_name} must be a percentage, got {number}")
        if kind.is_counter and number < 0:
            raise ValidationError(f"{metric_name} must be >= 0, got {number}")

        return cls(
            metric_name=metric_name,
            value=number,
            timestamp=timestamp or utc_now(),
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


@dataclass(frozen=True)
class BaselineStats:
    """Learned statistical normal for one metric"""

    mean: float = 0.0
    stddev: float = 0.0
    sample_count: int = 0
    learned_at: Optional[datetime] = None
    is_learned: bool = False

    def validate(self, metric_name: str) -> "BaselineStats":
        """Check invariants, raising StateError on violation"""
        if not math.isfinite(self.mean) or not math.isfinite(self.stddev):
            raise StateError(f"Non-finite baseline for {metric_name}")
        if self.stddev < 0:
            raise StateError(f"Negative stddev for {metric_name}: {self.stddev}")
        if self.sample_count < 0:
            raise StateError(f"Negative sample count for {metric_name}")
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["learned_at"] = self.learned_at.isoformat() if self.learned_at else None
        return data


@dataclass(frozen=True)
class Anomaly:
    """A sample deviating from its baseline, consumed once by the dispatcher"""

    metric_name: str
    observed_value: float
    baseline_mean: float
    baseline_stddev: float
    severity_score: float
    detected_at: datetime
    source: Optional[str] = None
    safe_mode: bool = False
    anomaly_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def kind(self) -> MetricKind:
        return MetricKind.from_metric_name(self.metric_name)

    def describe(self) -> str:
        """One-line description, as shown on the dashboard"""
        kind = self.kind
        if kind is MetricKind.THREAT:
            return f"Threat IP: {self.source}"
        if kind is MetricKind.HOST_LATENCY:
            host = self.metric_name[len(HOST_PREFIX) :]
            if self.observed_value < 0:
                return f"Device Down: {host}"
            return (
                f"Anomaly: {host} {self.observed_value:.1f}ms "
                f"(Normal: {self.baseline_mean:.1f}±{self.baseline_stddev:.1f})"
            )
        return (
            f"Anomaly: {kind.label} {self.observed_value:.1f} "
            f"(Normal: {self.baseline_mean:.1f}±{self.baseline_stddev:.1f})"
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["detected_at"] = self.detected_at.isoformat()
        data["description"] = self.describe()
        return data


@dataclass(frozen=True)
class MonitoringSnapshot:
    """Immutable, point-in-time view of the monitoring state"""

    taken_at: datetime
    latest: Mapping[str, MetricSample] = field(default_factory=lambda: MappingProxyType({}))
    history: Mapping[str, tuple[MetricSample, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    baselines: Mapping[str, BaselineStats] = field(default_factory=lambda: MappingProxyType({}))
    recent_anomalies: tuple[Anomaly, ...] = ()
    feedback: frozenset[str] = frozenset()
    safe_mode: frozenset[str] = frozenset()
    health: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def degraded(self) -> bool:
        return bool(self.health)

    @property
    def is_learning(self) -> bool:
        return any(not stats.is_learned for stats in self.baselines.values())

    def status_report(self) -> list[str]:
        """Compact status lines (time, cpu/ram, disk/temp, ping/net, fails)"""
        time_str = self.taken_at.strftime("%H:%M:%S")
        if not self.latest:
            return [time_str, "No data available"]

        def value(name: str) -> float:
            sample = self.latest.get(name)
            return sample.value if sample else 0.0

        return [
            time_str,
            f"CPU:{value('cpu'):.1f}% RAM:{value('ram'):.1f}%",
            f"Disk:{value('disk'):.1f}% Tmp:{value('temp'):.1f}C",
            f"Ping:{value('ping'):.1f}ms Net:{value('net'):.0f}",
            f"Fails:{value('fail'):.0f}",
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "taken_at": self.taken_at.isoformat(),
            "degraded": self.degraded,
            "learning": self.is_learning,
            "health": dict(self.health),
            "safe_mode": sorted(self.safe_mode),
            "status": self.status_report(),
            "latest": {name: sample.to_dict() for name, sample in self.latest.items()},
            "baselines": {name: stats.to_dict() for name, stats in self.baselines.items()},
            "anomalies": [anomaly.to_dict() for anomaly in self.recent_anomalies],
        }
