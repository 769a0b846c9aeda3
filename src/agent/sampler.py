"""
Host metrics sampler built on psutil.

Produces validated MetricSample values for one sampling cycle. Readings that
are unavailable on the platform (no sensors, no permission) are skipped
rather than invented.
"""

import re
import socket
import time
from collections import Counter, deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

import psutil
import structlog

from src.core.errors import ValidationError
from src.monitoring.models import MetricSample, host_metric, utc_now

from .config import DEFAULT_AUTH_LOGS

logger = structlog.get_logger(__name__)

FALLBACK_GATEWAY = "192.168.1.1"
THERMAL_ZONES = [Path(f"/sys/class/thermal/thermal_zone{i}/temp") for i in range(5)]
FAILED_LOGIN_PATTERN = re.compile(r"Failed password for .* from (\S+) port \d+")


class PsutilSampler:
    """Collects cpu, ram, disk, temp, net, ping, fail and per-host latency"""

    def __init__(
        self,
        hosts: Iterable[str] = (),
        gateway: str | None = None,
        auth_logs: Iterable[str] = DEFAULT_AUTH_LOGS,
        ping_timeout: float = 2.0,
        ping_port: int = 80,
        log_tail_lines: int = 500,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.hosts = list(hosts)
        self.gateway = gateway
        self.auth_logs = [Path(p) for p in auth_logs]
        self.ping_timeout = ping_timeout
        self.ping_port = ping_port
        self.log_tail_lines = log_tail_lines
        self._clock = clock
        self._offenders: Counter[str] = Counter()

        # Prime cpu_percent so the first interval=None call is meaningful
        psutil.cpu_percent(interval=None)

    def collect(self) -> list[MetricSample]:
        """Take one reading of every metric"""
        now = self._clock()
        failed, offenders = self.failed_logins()
        self._offenders = offenders

        readings: dict[str, float | None] = {
            "cpu": psutil.cpu_percent(interval=None),
            "ram": psutil.virtual_memory().percent,
            "disk": psutil.disk_usage("/").percent,
            "temp": self.temperature(),
            "net": self.connection_count(),
            "ping": self.tcp_ping(self.gateway or self.default_gateway()),
            "fail": failed,
        }
        for host in self.hosts:
            readings[host_metric(host)] = self.tcp_ping(host)

        samples = []
        for name, value in readings.items():
            if value is None:
                continue
            try:
                samples.append(MetricSample.create(name, value, now))
            except ValidationError as e:
                logger.warning("Discarding invalid reading", metric=name, value=value, error=str(e))
        return samples

    def offenders(self) -> Counter[str]:
        """Failed-login counts per source address seen by the last collect()"""
        return Counter(self._offenders)

    def temperature(self) -> float | None:
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is not None:
            try:
                readings = sensors()
            except OSError as e:
                logger.debug("Temperature sensors unavailable", error=str(e))
                readings = {}
            for entries in readings.values():
                for entry in entries:
                    if entry.current:
                        return float(entry.current)

        for zone in THERMAL_ZONES:
            try:
                return int(zone.read_text().strip()) / 1000.0
            except (OSError, ValueError):
                continue
        return None

    def connection_count(self) -> int | None:
        try:
            return len(psutil.net_connections(kind="inet"))
        except (psutil.AccessDenied, OSError) as e:
            logger.debug("Connection count unavailable", error=str(e))
            return None

    def tcp_ping(self, host: str) -> float:
        """TCP connect latency in ms, -1 if the host is unreachable"""
        start = time.perf_counter()
        try:
            with socket.create_connection((host, self.ping_port), timeout=self.ping_timeout):
                pass
        except OSError:
            return -1.0
        return round((time.perf_counter() - start) * 1000.0, 2)

    def default_gateway(self) -> str:
        """Default route gateway from /proc/net/route, or a common LAN default"""
        try:
            lines = Path("/proc/net/route").read_text().splitlines()[1:]
        except OSError:
            return FALLBACK_GATEWAY
        for line in lines:
            fields = line.split()
            if len(fields) > 2 and fields[1] == "00000000":
                raw = bytes.fromhex(fields[2])
                return socket.inet_ntoa(raw[::-1])
        return FALLBACK_GATEWAY

    def failed_logins(self) -> tuple[int, Counter[str]]:
        """Count 'Failed password' lines in the tail of the auth logs

        Returns:
            (total count, per-address counts)
        """
        count = 0
        offenders: Counter[str] = Counter()
        for path in self.auth_logs:
            try:
                with path.open(encoding="utf-8", errors="replace") as handle:
                    tail = deque(handle, maxlen=self.log_tail_lines)
            except OSError:
                continue
            for line in tail:
                if "Failed password" not in line or "invalid user" in line:
                    continue
                count += 1
                match = FAILED_LOGIN_PATTERN.search(line)
                if match:
                    offenders[match.group(1)] += 1
        return count, offenders
