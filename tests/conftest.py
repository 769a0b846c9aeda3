"""
Pytest configuration and shared fixtures.
"""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from src.core.errors import ActionError
from src.monitoring.models import MetricSample, MonitorConfig
from src.response.models import ResponsePolicy, RetryPolicy


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 10, 2, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeFirewall:
    """Firewall double recording calls; scripted failures are raised in order."""

    def __init__(self, failures=None, delay: float = 0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.block_calls = []
        self.blocked = set()
        self._lock = threading.Lock()

    def block(self, ip):
        with self._lock:
            self.block_calls.append(ip.value)
            failure = self.failures.pop(0) if self.failures else None
        if self.delay:
            threading.Event().wait(self.delay)
        if failure is not None:
            raise failure
        with self._lock:
            self.blocked.add(ip.value)

    def is_blocked(self, ip):
        with self._lock:
            return ip.value in self.blocked


class FakeAlertSink:
    """Alert sink double collecting (message, severity) pairs."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.alerts = []
        self._lock = threading.Lock()

    def notify(self, message, severity):
        with self._lock:
            failure = self.failures.pop(0) if self.failures else None
            if failure is None:
                self.alerts.append((message, severity))
        if failure is not None:
            raise failure


class FakeShutdown:
    """Shutdown double counting requests."""

    def __init__(self, failures=None, delay: float = 0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.reasons = []

    def shutdown(self, reason):
        self.reasons.append(reason)
        if self.delay:
            threading.Event().wait(self.delay)
        if self.failures:
            raise self.failures.pop(0)


# Clock fixtures
@pytest.fixture
def clock():
    """Fixed clock starting at 2025-10-02 12:00 UTC."""
    return FakeClock()


# Monitoring fixtures
@pytest.fixture
def monitor_config():
    """Small window, no learning delay, clipping disabled for predictable tests."""
    return MonitorConfig(
        window_size=5,
        learning_period_seconds=0.0,
        min_samples=5,
        anomaly_threshold=3.0,
        outlier_sigma=None,
    )


@pytest.fixture
def make_sample(clock):
    """Factory for samples stamped with the fake clock, one second apart."""

    def _make(metric_name="cpu", value=10.0, source=None, advance=1.0):
        clock.advance(advance)
        return MetricSample.create(metric_name, value, clock(), source=source)

    return _make


# Response fixtures
@pytest.fixture
def fast_policy():
    """Response policy with short timeouts and no-op backoff."""
    return ResponsePolicy(
        action_timeout=1.0,
        retry=RetryPolicy(max_attempts=5, base_delay=0.01, max_delay=0.05),
        workers=4,
    )


@pytest.fixture
def make_firewall():
    """Factory for firewall doubles with scripted failures."""
    return FakeFirewall


@pytest.fixture
def make_alert_sink():
    """Factory for alert sink doubles with scripted failures."""
    return FakeAlertSink


@pytest.fixture
def make_shutdown():
    """Factory for shutdown doubles with scripted failures."""
    return FakeShutdown


@pytest.fixture
def firewall():
    return FakeFirewall()


@pytest.fixture
def alert_sink():
    return FakeAlertSink()


@pytest.fixture
def shutdown_controller():
    return FakeShutdown()


@pytest.fixture
def timeout_error():
    """Factory for timed-out action errors."""
    return lambda: ActionError("firewall busy", timed_out=True)
