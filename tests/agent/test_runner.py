"""
Tests for MonitorAgent.
"""

from collections import Counter
from unittest.mock import MagicMock, patch

import pytest

from src.agent.config import AgentConfig
from src.agent.runner import MonitorAgent
from src.core.errors import PersistError
from src.monitoring.models import MetricSample
from src.monitoring.persistence import PersistenceGateway
from src.monitoring.service import MonitoringService
from src.response.controllers import DryRunFirewall, DryRunShutdown
from src.response.dispatcher import ResponseDispatcher
from src.response.models import ActionState


@pytest.fixture
def agent_config(monitor_config, fast_policy, tmp_path):
    return AgentConfig(
        monitor=monitor_config,
        response=fast_policy,
        update_interval=0.01,
        flush_interval=0.05,
        shutdown_timeout=5.0,
        baseline_path=str(tmp_path / "baseline.json"),
        monitored_hosts=[],
        brute_force_threshold=2,
        dry_run=True,
    )


@pytest.fixture
def sampler():
    mock = MagicMock()
    mock.collect.return_value = []
    mock.offenders.return_value = Counter()
    return mock


@pytest.fixture
def agent(agent_config, sampler, clock, firewall, alert_sink, shutdown_controller, fast_policy):
    service = MonitoringService(agent_config.monitor, clock=clock)
    dispatcher = ResponseDispatcher(
        firewall, alert_sink, shutdown_controller, fast_policy, sleep=lambda s: None, clock=clock
    )
    agent = MonitorAgent(
        agent_config, sampler, service, dispatcher, PersistenceGateway(agent_config.baseline_path)
    )
    yield agent
    dispatcher.close(timeout=5)


class TestRunCycle:
    """Tests for a single sampling cycle."""

    def test_learns_then_dispatches(self, agent, sampler, clock, alert_sink):
        """Samples feed the service; anomalies reach the dispatcher."""
        for _ in range(5):
            clock.advance(1)
            sampler.collect.return_value = [MetricSample.create("cpu", 10.0, clock())]
            assert agent.run_cycle() == []

        clock.advance(1)
        sampler.collect.return_value = [MetricSample.create("cpu", 100.0, clock())]
        anomalies = agent.run_cycle()

        assert len(anomalies) == 1
        agent.dispatcher.close(timeout=5)
        record = agent.dispatcher.record_for(anomalies[0].anomaly_id)
        assert record.state is ActionState.APPLIED
        assert alert_sink.alerts[0][1] == "critical"
        assert agent.stats["anomalies_submitted"] == 1

    def test_brute_force_offender_reported_once(self, agent, sampler, firewall):
        sampler.offenders.return_value = Counter({"203.0.113.7": 3, "198.51.100.1": 1})

        first = agent.run_cycle()
        second = agent.run_cycle()
        agent.dispatcher.close(timeout=5)

        assert [a.source for a in first] == ["203.0.113.7"]
        assert second == []
        assert firewall.block_calls == ["203.0.113.7"]

    def test_sampler_failure_marks_degraded(self, agent, sampler):
        sampler.collect.side_effect = RuntimeError("psutil exploded")

        assert agent.run_cycle() == []
        assert agent.service.snapshot().health == {"sampler": "psutil exploded"}

        sampler.collect.side_effect = None
        agent.run_cycle()
        assert not agent.service.snapshot().degraded

    def test_failed_action_marks_dispatcher_degraded(self, agent, sampler, firewall):
        firewall.failures = [Exception("iptables missing")]
        sampler.offenders.return_value = Counter({"203.0.113.7": 5})

        agent.run_cycle()
        agent.dispatcher.close(timeout=5)

        assert "dispatcher" in agent.service.snapshot().health


class TestFlush:
    """Tests for baseline persistence."""

    def test_flush_writes_baseline(self, agent, sampler, clock):
        for _ in range(5):
            clock.advance(1)
            sampler.collect.return_value = [MetricSample.create("cpu", 10.0, clock())]
            agent.run_cycle()

        assert agent.flush() is True

        loaded = agent.gateway.load()
        assert loaded.is_learned("cpu")

    def test_flush_failure_marks_degraded(self, agent):
        with patch.object(agent.gateway, "save", side_effect=PersistError("disk full")):
            assert agent.flush() is False

        assert agent.service.snapshot().health == {"persistence": "disk full"}
        assert agent.stats["flush_errors"] == 1

        assert agent.flush() is True
        assert not agent.service.snapshot().degraded


class TestLifecycle:
    """Tests for start/stop and construction."""

    @patch("src.agent.runner.PsutilSampler")
    def test_from_config_dry_run(self, mock_sampler_class, agent_config):
        agent = MonitorAgent.from_config(agent_config)

        assert isinstance(agent.dispatcher._firewall, DryRunFirewall)
        assert isinstance(agent.dispatcher._shutdown, DryRunShutdown)
        mock_sampler_class.assert_called_once_with(
            hosts=[], gateway=None, auth_logs=agent_config.auth_logs
        )
        agent.dispatcher.close()

    @patch("src.agent.runner.PsutilSampler")
    def test_from_config_unreadable_baseline(self, mock_sampler_class, agent_config, tmp_path):
        (tmp_path / "baseline.json").mkdir()

        agent = MonitorAgent.from_config(agent_config)

        assert "persistence" in agent.service.snapshot().health
        agent.dispatcher.close()

    def test_run_for_duration(self, agent, sampler):
        """run() samples in the background and flushes on stop."""
        agent.run(duration_seconds=0.2)

        assert sampler.collect.call_count >= 1
        assert agent.stats["flushes"] >= 1
        assert agent._threads == []

    def test_start_twice(self, agent):
        agent.start()
        try:
            with pytest.raises(RuntimeError):
                agent.start()
        finally:
            agent.stop()
