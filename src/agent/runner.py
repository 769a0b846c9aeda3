"""
Agent runtime: wires the sampler, the monitoring service, the dispatcher and
the persistence gateway together and runs the background loops.

Threads:
- sampling loop: collect → update → submit anomalies (every update_interval)
- flush loop: save the baseline snapshot (every flush_interval)
- dispatcher workers: external actions, off the sampling thread
"""

import threading
import time
from concurrent.futures import Future

import structlog

from src.core.errors import PersistError
from src.monitoring.baseline import BaselineStore
from src.monitoring.models import Anomaly
from src.monitoring.persistence import PersistenceGateway
from src.monitoring.service import MonitoringService
from src.response.controllers import (
    AlertSink,
    CompositeAlertSink,
    DryRunFirewall,
    DryRunShutdown,
    IptablesFirewall,
    LogAlertSink,
    SystemShutdown,
    WebhookAlertSink,
)
from src.response.dispatcher import ResponseDispatcher
from src.response.models import ActionState

from .config import AgentConfig
from .sampler import PsutilSampler

logger = structlog.get_logger(__name__)


class MonitorAgent:
    """Runs the monitoring engine on a host"""

    def __init__(
        self,
        config: AgentConfig,
        sampler: PsutilSampler,
        service: MonitoringService,
        dispatcher: ResponseDispatcher,
        gateway: PersistenceGateway,
    ):
        self.config = config
        self.sampler = sampler
        self.service = service
        self.dispatcher = dispatcher
        self.gateway = gateway

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._reported_offenders: set[str] = set()

        self.stats = {
            "cycles": 0,
            "cycle_errors": 0,
            "anomalies_submitted": 0,
            "flushes": 0,
            "flush_errors": 0,
        }

    @classmethod
    def from_config(cls, config: AgentConfig) -> "MonitorAgent":
        """Build an agent with the real collaborators (or dry-run ones)"""
        gateway = PersistenceGateway(config.baseline_path)
        load_error = None
        try:
            store = gateway.load()
        except PersistError as e:
            load_error = str(e)
            store = BaselineStore()

        service = MonitoringService(config.monitor, store)
        if load_error:
            service.set_health("persistence", load_error)

        alerts: list[AlertSink] = [LogAlertSink()]
        if config.webhook_url:
            alerts.append(WebhookAlertSink(config.webhook_url))

        if config.dry_run:
            firewall, shutdown = DryRunFirewall(), DryRunShutdown()
        else:
            firewall = IptablesFirewall(use_sudo=config.use_sudo)
            shutdown = SystemShutdown(use_sudo=config.use_sudo)

        dispatcher = ResponseDispatcher(
            firewall=firewall,
            alerts=CompositeAlertSink(alerts),
            shutdown=shutdown,
            policy=config.response,
        )
        sampler = PsutilSampler(
            hosts=config.monitored_hosts,
            gateway=config.gateway,
            auth_logs=config.auth_logs,
        )
        return cls(config, sampler, service, dispatcher, gateway)

    # ------------------------------------------------------------------
    # One unit of work each
    # ------------------------------------------------------------------

    def run_cycle(self) -> list[Anomaly]:
        """Sample once, update the engine and hand anomalies to the dispatcher"""
        self.stats["cycles"] += 1
        try:
            samples = self.sampler.collect()
        except Exception as e:
            self.stats["cycle_errors"] += 1
            logger.error("Sampling failed", error=str(e), exc_info=True)
            self.service.set_health("sampler", str(e))
            return []
        self.service.set_health("sampler", None)

        anomalies = self.service.update_many(samples)

        for address, count in self.sampler.offenders().items():
            if count < self.config.brute_force_threshold or address in self._reported_offenders:
                continue
            self._reported_offenders.add(address)
            anomalies.append(
                self.service.report_threat(address, reason=f"{count} failed logins")
            )

        for anomaly in anomalies:
            self._submit(anomaly)
        return anomalies

    def flush(self) -> bool:
        """Persist the current baseline snapshot; failures are retried next time"""
        try:
            self.gateway.save(self.service.export_baseline())
        except PersistError as e:
            self.stats["flush_errors"] += 1
            self.service.set_health("persistence", str(e))
            return False
        self.stats["flushes"] += 1
        self.service.set_health("persistence", None)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Agent already started")
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._sampling_loop, name="sampling", daemon=True),
            threading.Thread(target=self._flush_loop, name="baseline-flush", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Agent started",
            update_interval=self.config.update_interval,
            flush_interval=self.config.flush_interval,
            hosts=self.config.monitored_hosts,
            dry_run=self.config.dry_run,
        )

    def stop(self) -> None:
        """Stop the loops, drain in-flight dispatches and flush one last time"""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=self.config.update_interval + self.config.shutdown_timeout)
        self._threads = []

        unfinished = self.dispatcher.close(timeout=self.config.shutdown_timeout)
        self.flush()
        logger.info("Agent stopped", unfinished_dispatches=unfinished, stats=self.stats)

    def run(self, duration_seconds: float | None = None) -> None:
        """Run until interrupted or for `duration_seconds`"""
        self.start()
        try:
            self._stop.wait(timeout=duration_seconds)
        except KeyboardInterrupt:
            logger.info("Received interrupt signal, stopping agent")
        finally:
            self.stop()

    def _sampling_loop(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception as e:
                self.stats["cycle_errors"] += 1
                logger.error("Sampling cycle failed", error=str(e), exc_info=True)
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, self.config.update_interval - elapsed))

    def _flush_loop(self) -> None:
        while not self._stop.wait(self.config.flush_interval):
            self.flush()

    def _submit(self, anomaly: Anomaly) -> None:
        try:
            future = self.dispatcher.submit(anomaly)
        except RuntimeError as e:
            logger.warning("Dispatcher unavailable", anomaly_id=anomaly.anomaly_id, error=str(e))
            return
        self.stats["anomalies_submitted"] += 1
        future.add_done_callback(self._on_dispatched)

    def _on_dispatched(self, future: Future) -> None:
        if future.cancelled() or future.exception() is not None:
            self.service.set_health("dispatcher", "dispatch crashed")
            return
        record = future.result()
        if record is None:
            return
        if record.state is ActionState.FAILED:
            self.service.set_health("dispatcher", f"{record.action.kind} failed: {record.error}")
        elif record.state is ActionState.APPLIED:
            self.service.set_health("dispatcher", None)
