"""
Tests for PsutilSampler.
"""

from collections import namedtuple
from unittest.mock import MagicMock, patch

import pytest

from src.agent.sampler import FALLBACK_GATEWAY, PsutilSampler

Temp = namedtuple("Temp", "label current high critical")

AUTH_LOG = """\
Oct  2 12:00:01 pi sshd[101]: Failed password for root from 203.0.113.7 port 52011 ssh2
Oct  2 12:00:02 pi sshd[102]: Failed password for root from 203.0.113.7 port 52012 ssh2
Oct  2 12:00:03 pi sshd[103]: Failed password for invalid user admin from 198.51.100.9 port 40000 ssh2
Oct  2 12:00:04 pi sshd[104]: Accepted publickey for pi from 192.168.1.20 port 50000 ssh2
Oct  2 12:00:05 pi sshd[105]: Failed password for pi from 192.0.2.44 port 33333 ssh2
"""


@pytest.fixture
def mock_psutil():
    with patch("src.agent.sampler.psutil") as mock:
        mock.cpu_percent.return_value = 12.5
        mock.virtual_memory.return_value = MagicMock(percent=40.0)
        mock.disk_usage.return_value = MagicMock(percent=55.0)
        mock.sensors_temperatures.return_value = {"cpu_thermal": [Temp("", 48.3, None, None)]}
        mock.net_connections.return_value = [object()] * 7
        mock.AccessDenied = type("AccessDenied", (Exception,), {})
        yield mock


@pytest.fixture
def auth_log(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text(AUTH_LOG)
    return path


class TestPsutilSampler:
    """Tests for PsutilSampler class."""

    def test_collect(self, mock_psutil, auth_log, clock):
        """One sample per available reading, all stamped with the same time."""
        sampler = PsutilSampler(
            hosts=["8.8.8.8"], gateway="192.168.1.1", auth_logs=[auth_log], clock=clock
        )
        with patch.object(sampler, "tcp_ping", side_effect=[3.2, -1.0]):
            samples = sampler.collect()

        values = {s.metric_name: s.value for s in samples}
        assert values == {
            "cpu": 12.5,
            "ram": 40.0,
            "disk": 55.0,
            "temp": 48.3,
            "net": 7.0,
            "ping": 3.2,
            "fail": 3.0,
            "host:8.8.8.8": -1.0,
        }
        assert {s.timestamp for s in samples} == {clock()}

    def test_unavailable_readings_skipped(self, mock_psutil, tmp_path, clock):
        mock_psutil.sensors_temperatures.return_value = {}
        mock_psutil.net_connections.side_effect = mock_psutil.AccessDenied()
        sampler = PsutilSampler(
            gateway="192.168.1.1", auth_logs=[tmp_path / "missing"], clock=clock
        )

        with patch("src.agent.sampler.THERMAL_ZONES", []), patch.object(
            sampler, "tcp_ping", return_value=1.0
        ):
            names = {s.metric_name for s in sampler.collect()}

        assert "temp" not in names
        assert "net" not in names
        assert names >= {"cpu", "ram", "disk", "ping", "fail"}

    def test_invalid_reading_discarded(self, mock_psutil, tmp_path, clock):
        mock_psutil.cpu_percent.return_value = 250.0
        sampler = PsutilSampler(gateway="192.168.1.1", auth_logs=[], clock=clock)

        with patch.object(sampler, "tcp_ping", return_value=1.0):
            names = {s.metric_name for s in sampler.collect()}

        assert "cpu" not in names

    def test_failed_logins_and_offenders(self, mock_psutil, auth_log):
        """'invalid user' lines are ignored; offenders are counted per address."""
        sampler = PsutilSampler(auth_logs=[auth_log])

        count, offenders = sampler.failed_logins()

        assert count == 3
        assert offenders == {"203.0.113.7": 2, "192.0.2.44": 1}

    def test_offenders_from_last_collect(self, mock_psutil, auth_log):
        sampler = PsutilSampler(gateway="192.168.1.1", auth_logs=[auth_log])

        assert sampler.offenders() == {}
        with patch.object(sampler, "tcp_ping", return_value=1.0):
            sampler.collect()

        assert sampler.offenders()["203.0.113.7"] == 2

    def test_log_tail_limit(self, mock_psutil, auth_log):
        sampler = PsutilSampler(auth_logs=[auth_log], log_tail_lines=1)

        count, _ = sampler.failed_logins()

        assert count == 1

    def test_temperature_from_thermal_zone(self, mock_psutil, tmp_path):
        mock_psutil.sensors_temperatures.return_value = {}
        zone = tmp_path / "temp"
        zone.write_text("51234\n")
        sampler = PsutilSampler()

        with patch("src.agent.sampler.THERMAL_ZONES", [tmp_path / "missing", zone]):
            assert sampler.temperature() == pytest.approx(51.234)

    @patch("src.agent.sampler.socket.create_connection")
    def test_tcp_ping(self, mock_connect, mock_psutil):
        sampler = PsutilSampler(ping_timeout=1.0)

        assert sampler.tcp_ping("192.0.2.1") >= 0
        mock_connect.assert_called_once_with(("192.0.2.1", 80), timeout=1.0)

        mock_connect.side_effect = OSError("unreachable")
        assert sampler.tcp_ping("192.0.2.1") == -1.0

    def test_default_gateway(self, mock_psutil, tmp_path):
        route = (
            "Iface\tDestination\tGateway \tFlags\n"
            "eth0\t00000000\t0101A8C0\t0003\n"
            "eth0\t0001A8C0\t00000000\t0001\n"
        )
        sampler = PsutilSampler()

        with patch("src.agent.sampler.Path.read_text", return_value=route):
            assert sampler.default_gateway() == "192.168.1.1"

        with patch("src.agent.sampler.Path.read_text", side_effect=OSError):
            assert sampler.default_gateway() == FALLBACK_GATEWAY
