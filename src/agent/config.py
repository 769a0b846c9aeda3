"""
Agent configuration and predefined profiles.
"""

import os
from dataclasses import dataclass, field, replace

from src.monitoring.models import MonitorConfig
from src.response.models import ResponsePolicy, RetryPolicy

DEFAULT_AUTH_LOGS = ["/var/log/auth.log", "/var/log/secure", "/var/log/messages"]


@dataclass
class AgentConfig:
    """Configuration for the monitoring agent"""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    response: ResponsePolicy = field(default_factory=ResponsePolicy)

    # Loops
    update_interval: float = 5.0
    flush_interval: float = 60.0
    shutdown_timeout: float = 30.0  # max time to drain dispatches on stop

    # Persistence
    baseline_path: str = "data/baseline.json"

    # Sampling
    monitored_hosts: list[str] = field(default_factory=lambda: ["8.8.8.8", "1.1.1.1"])
    gateway: str | None = None  # auto-detected when None
    auth_logs: list[str] = field(default_factory=lambda: list(DEFAULT_AUTH_LOGS))
    brute_force_threshold: int = 5  # failed logins from one address before it is reported

    # Actions
    webhook_url: str | None = None
    use_sudo: bool = True
    dry_run: bool = False

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_env(cls, base: "AgentConfig | None" = None) -> "AgentConfig":
        """Overlay MONITOR_* / ALERT_* / LOG_* environment variables on `base`"""
        base = base or cls()
        monitor = replace(
            base.monitor,
            window_size=_env_int("MONITOR_WINDOW_SIZE", base.monitor.window_size),
            learning_period_seconds=_env_float(
                "MONITOR_LEARNING_PERIOD", base.monitor.learning_period_seconds
            ),
            min_samples=_env_int("MONITOR_MIN_SAMPLES", base.monitor.min_samples),
            anomaly_threshold=_env_float(
                "MONITOR_ANOMALY_THRESHOLD", base.monitor.anomaly_threshold
            ),
        )
        response = replace(
            base.response,
            alert_threshold=_env_float("ALERT_THRESHOLD", base.response.alert_threshold),
            block_threshold=_env_float("BLOCK_THRESHOLD", base.response.block_threshold),
            high_temp_threshold=_env_float(
                "HIGH_TEMP_THRESHOLD", base.response.high_temp_threshold
            ),
        )
        hosts = os.getenv("MONITOR_HOSTS")
        return replace(
            base,
            monitor=monitor,
            response=response,
            update_interval=_env_float("MONITOR_UPDATE_INTERVAL", base.update_interval),
            flush_interval=_env_float("MONITOR_FLUSH_INTERVAL", base.flush_interval),
            baseline_path=os.getenv("MONITOR_BASELINE_PATH", base.baseline_path),
            monitored_hosts=(
                [h.strip() for h in hosts.split(",") if h.strip()]
                if hosts is not None
                else list(base.monitored_hosts)
            ),
            gateway=os.getenv("MONITOR_GATEWAY", base.gateway),
            webhook_url=os.getenv("ALERT_WEBHOOK_URL", base.webhook_url),
            dry_run=_env_bool("MONITOR_DRY_RUN", base.dry_run),
            log_level=os.getenv("LOG_LEVEL", base.log_level).upper(),
            json_logs=_env_bool("LOG_JSON", base.json_logs),
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Standard single host
DEFAULT_CONFIG = AgentConfig()


# Raspberry Pi: slower sampling, earlier thermal shutdown
RASPBERRY_PI_CONFIG = AgentConfig(
    monitor=MonitorConfig(window_size=60, learning_period_seconds=600.0, min_samples=20),
    response=ResponsePolicy(high_temp_threshold=80.0, workers=2),
    update_interval=10.0,
    flush_interval=120.0,
)


# Development/Testing (fast learning, no system changes)
DEV_CONFIG = AgentConfig(
    monitor=MonitorConfig(window_size=20, learning_period_seconds=10.0, min_samples=5),
    response=ResponsePolicy(
        action_timeout=2.0, retry=RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0)
    ),
    update_interval=1.0,
    flush_interval=10.0,
    baseline_path="data/baseline-dev.json",
    monitored_hosts=[],
    use_sudo=False,
    dry_run=True,
    log_level="DEBUG",
)
