"""
Automated response dispatcher.

Maps anomalies to actions per ResponsePolicy and executes them through the
injected capabilities, with:
- at-most-once dispatch per anomaly id
- idempotent blocking (BlockList) and a single shutdown
- a timeout on every external call, bounded exponential backoff on transient
  failures
- no lock held while an external call runs
"""

import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from concurrent.futures import wait
from datetime import datetime
from typing import Any, Callable

import structlog

from src.core.errors import ActionError, MonitorError, ValidationError
from src.monitoring.models import Anomaly, MetricKind, utc_now
from src.monitoring.scorer import severity_label

from .blocklist import BlockList, Claim
from .controllers import AlertSink, FirewallController, ShutdownController
from .models import (
    ActionRecord,
    ActionState,
    BlockAddress,
    ResponseAction,
    ResponsePolicy,
    SendAlert,
    TriggerShutdown,
)
from .validation import validate_address

logger = structlog.get_logger(__name__)


class ResponseDispatcher:
    """Executes automated responses to anomalies"""

    def __init__(
        self,
        firewall: FirewallController,
        alerts: AlertSink,
        shutdown: ShutdownController,
        policy: ResponsePolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.policy = policy or ResponsePolicy()
        self._firewall = firewall
        self._alerts = alerts
        self._shutdown = shutdown
        self._sleep = sleep
        self._clock = clock

        self._blocklist = BlockList(clock)
        self._lock = threading.Lock()
        self._records: OrderedDict[str, ActionRecord] = OrderedDict()
        self._shutdown_dispatched = False
        self._closed = False
        self._pending: set[Future] = set()

        # External calls run on their own daemon threads (see _call_with_timeout)
        # so a hung call is abandoned after its timeout and never holds up exit
        self._workers = ThreadPoolExecutor(
            max_workers=self.policy.workers, thread_name_prefix="dispatch"
        )
        self._abandoned_calls = 0

        self.stats = {
            "dispatched": 0,
            "applied": 0,
            "failed": 0,
            "rejected": 0,
            "duplicates": 0,
            "skipped_safe_mode": 0,
        }

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def resolve_action(self, anomaly: Anomaly) -> ResponseAction | None:
        """Pick the single most severe action the policy allows for an anomaly"""
        if anomaly.safe_mode:
            return None

        kind = anomaly.kind
        rule = self.policy.metric_rules.get(anomaly.metric_name) or self.policy.metric_rules.get(
            kind.value
        )
        if rule is not None and not rule.enabled:
            return None

        alert_threshold = self.policy.alert_threshold
        block_threshold = self.policy.block_threshold
        if rule is not None:
            if rule.alert_threshold is not None:
                alert_threshold = rule.alert_threshold
            if rule.block_threshold is not None:
                block_threshold = rule.block_threshold

        score = anomaly.severity_score
        if (
            kind is MetricKind.TEMPERATURE
            and self.policy.shutdown_enabled
            and anomaly.observed_value > self.policy.high_temp_threshold
        ):
            return TriggerShutdown(
                reason=(
                    f"High temperature {anomaly.observed_value:.1f}C "
                    f"(limit {self.policy.high_temp_threshold:.1f}C)"
                )
            )
        if anomaly.source is not None and score >= block_threshold:
            return BlockAddress(ip=anomaly.source)
        if score >= alert_threshold:
            return SendAlert(
                message=anomaly.describe(),
                severity=severity_label(score, alert_threshold, block_threshold),
            )
        return None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, anomaly: Anomaly) -> ActionRecord | None:
        """Resolve and execute the action for an anomaly

        Returns:
            The ActionRecord (the existing one if this anomaly was already
            dispatched), or None if the policy calls for no action
        """
        if anomaly.safe_mode:
            with self._lock:
                self.stats["skipped_safe_mode"] += 1
            logger.warning(
                "Metric in safe mode, automated response skipped", metric=anomaly.metric_name
            )
            return None

        action = self.resolve_action(anomaly)
        if action is None:
            return None

        with self._lock:
            existing = self._records.get(anomaly.anomaly_id)
            if existing is not None:
                self.stats["duplicates"] += 1
                return existing.copy()
            record = ActionRecord(
                anomaly_id=anomaly.anomaly_id, action=action, started_at=self._clock()
            )
            self._records[anomaly.anomaly_id] = record
            while len(self._records) > self.policy.max_records:
                self._records.popitem(last=False)
            self.stats["dispatched"] += 1

        log = logger.bind(anomaly_id=anomaly.anomaly_id, action=action.kind)
        self._update(record, state=ActionState.DISPATCHING)
        log.info("Dispatching action", metric=anomaly.metric_name, score=anomaly.severity_score)

        try:
            if isinstance(action, BlockAddress):
                self._apply_block(record, action, anomaly)
            elif isinstance(action, TriggerShutdown):
                self._apply_shutdown(record, action)
            else:
                self._run_with_retry(
                    record, lambda: self._alerts.notify(action.message, action.severity)
                )
        except ValidationError as e:
            self._finish(record, ActionState.FAILED, error=e)
            with self._lock:
                self.stats["rejected"] += 1
            log.warning("Action rejected", error=str(e))
            self._report_failure(record, e)
        except ActionError as e:
            self._finish(record, ActionState.FAILED, error=e)
            log.error("Action failed", error=str(e), attempts=record.attempts)
            self._report_failure(record, e)
        else:
            self._finish(record, ActionState.APPLIED)
            log.info("Action applied", attempts=record.attempts, note=record.note)

        with self._lock:
            return record.copy()

    def submit(self, anomaly: Anomaly) -> Future:
        """Dispatch on the worker pool so the caller never waits on external calls"""
        with self._lock:
            if self._closed:
                raise RuntimeError("Dispatcher is closed")
            future = self._workers.submit(self.dispatch, anomaly)
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def close(self, timeout: float | None = None) -> int:
        """Stop accepting work and drain in-flight dispatches

        Returns:
            Number of dispatches still unfinished when the timeout expired
        """
        with self._lock:
            self._closed = True
            pending = set(self._pending)

        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            logger.error("Dispatches still running at shutdown", count=len(not_done))
        self._workers.shutdown(wait=len(not_done) == 0)
        with self._lock:
            abandoned = self._abandoned_calls
        if abandoned:
            logger.warning("Abandoned external calls still running", count=abandoned)
        logger.info("Dispatcher closed", drained=len(pending) - len(not_done))
        return len(not_done)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def records(self) -> list[ActionRecord]:
        with self._lock:
            return [record.copy() for record in self._records.values()]

    def record_for(self, anomaly_id: str) -> ActionRecord | None:
        with self._lock:
            record = self._records.get(anomaly_id)
            return record.copy() if record else None

    def blocked(self) -> dict[str, datetime]:
        return self._blocklist.items()

    @property
    def blocklist(self) -> BlockList:
        return self._blocklist

    @property
    def shutdown_dispatched(self) -> bool:
        with self._lock:
            return self._shutdown_dispatched

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _apply_block(self, record: ActionRecord, action: BlockAddress, anomaly: Anomaly) -> None:
        address = validate_address(action.ip, self.policy.protected_addresses)
        wait_limit = self._max_action_seconds()

        while True:
            claim, event = self._blocklist.claim(address.value)
            if claim is Claim.BLOCKED:
                self._update(record, note="already blocked")
                return
            if claim is Claim.CLAIMED:
                break
            if not event.wait(timeout=wait_limit):
                raise ActionError(f"Concurrent block of {address} did not finish")

        blocked = False
        try:
            self._run_with_retry(
                record,
                lambda: self._firewall.block(address),
                after_timeout=lambda: self._firewall.is_blocked(address),
            )
            blocked = True
        finally:
            self._blocklist.release(address.value, blocked=blocked)

        self._notify_best_effort(f"Blocked {address}: {anomaly.describe()}", "critical")

    def _apply_shutdown(self, record: ActionRecord, action: TriggerShutdown) -> None:
        with self._lock:
            if self._shutdown_dispatched:
                record.note = "shutdown already in progress"
                self.stats["duplicates"] += 1
                return
            self._shutdown_dispatched = True

        self._notify_best_effort(f"Shutting down: {action.reason}", "critical")
        try:
            self._run_with_retry(
                record, lambda: self._shutdown.shutdown(action.reason), retry_timeouts=False
            )
        except ActionError as e:
            if e.timed_out:
                # The call may still be powering off; never fire a second one
                self._update(record, note="shutdown may still be in progress")
                raise
            # Nothing fired, a later anomaly may try again
            with self._lock:
                self._shutdown_dispatched = False
            raise

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def _run_with_retry(
        self,
        record: ActionRecord,
        call: Callable[[], Any],
        after_timeout: Callable[[], bool] | None = None,
        retry_timeouts: bool = True,
    ) -> None:
        """Run `call` with a timeout, retrying transient failures with backoff

        `after_timeout` is consulted before retrying a timed-out call; if it
        returns True the earlier attempt took effect and no retry is made.
        With `retry_timeouts=False` a timed-out call is raised as is, since
        the abandoned attempt may still complete.
        """
        retry = self.policy.retry
        last_error: ActionError | None = None

        for attempt in range(1, retry.max_attempts + 1):
            if last_error is not None:
                self._update(record, retries=attempt - 1)
                self._sleep(retry.delay(attempt - 1))
                if last_error.timed_out and after_timeout is not None:
                    try:
                        if self._call_with_timeout(after_timeout):
                            self._update(record, note="applied by timed-out attempt")
                            return
                    except ActionError as e:
                        logger.debug("State check failed before retry", error=str(e))

            self._update(record, attempts=attempt)
            try:
                self._call_with_timeout(call)
                return
            except ActionError as e:
                last_error = e
                logger.warning(
                    "Action attempt failed",
                    anomaly_id=record.anomaly_id,
                    attempt=attempt,
                    max_attempts=retry.max_attempts,
                    transient=e.transient,
                    timed_out=e.timed_out,
                    error=str(e),
                )
                if not e.transient or (e.timed_out and not retry_timeouts):
                    raise

        raise ActionError(
            f"Gave up after {retry.max_attempts} attempts: {last_error}"
        ) from last_error

    def _call_with_timeout(self, call: Callable[[], Any]) -> Any:
        future: Future = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(call())
            except BaseException as e:
                future.set_exception(e)
            finally:
                with self._lock:
                    if abandoned.is_set():
                        self._abandoned_calls -= 1

        abandoned = threading.Event()
        threading.Thread(target=run, name="action-call", daemon=True).start()
        try:
            return future.result(timeout=self.policy.action_timeout)
        except FutureTimeout:
            with self._lock:
                if not future.done():
                    abandoned.set()
                    self._abandoned_calls += 1
            raise ActionError(
                f"Action timed out after {self.policy.action_timeout}s", timed_out=True
            ) from None
        except ActionError:
            raise
        except Exception as e:
            raise ActionError(f"{type(e).__name__}: {e}") from e

    def _notify_best_effort(self, message: str, severity: str) -> None:
        try:
            self._call_with_timeout(lambda: self._alerts.notify(message, severity))
        except ActionError as e:
            logger.warning("Alert delivery failed", message=message, error=str(e))

    def _report_failure(self, record: ActionRecord, error: MonitorError) -> None:
        if isinstance(record.action, SendAlert):
            # The alert sink itself is what failed
            return
        if isinstance(error, ValidationError):
            message = f"Automated {record.action.kind} rejected: {error}"
        else:
            message = (
                f"Automated {record.action.kind} failed after {record.attempts} attempt(s): {error}"
            )
        self._notify_best_effort(message, "critical")

    def _max_action_seconds(self) -> float:
        retry = self.policy.retry
        backoff = sum(retry.delay(n) for n in range(1, retry.max_attempts))
        return self.policy.action_timeout * retry.max_attempts * 2 + backoff

    def _update(self, record: ActionRecord, **changes: Any) -> None:
        with self._lock:
            for name, value in changes.items():
                setattr(record, name, value)

    def _finish(
        self, record: ActionRecord, state: ActionState, error: Exception | None = None
    ) -> None:
        with self._lock:
            record.state = state
            record.error = error
            record.finished_at = self._clock()
            if state is ActionState.APPLIED:
                self.stats["applied"] += 1
            else:
                self.stats["failed"] += 1

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Dispatch crashed", error=str(future.exception()))
