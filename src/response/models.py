"""
Response actions, dispatch records and response policy configuration.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


class ActionState(Enum):
    """Lifecycle of one dispatched action"""

    PENDING = "pending"
    DISPATCHING = "dispatching"
    APPLIED = "applied"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionState.APPLIED, ActionState.FAILED)


@dataclass(frozen=True)
class ValidatedAddress:
    """An IP address that passed strict validation (see validation.py)"""

    value: str
    version: int = 4

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BlockAddress:
    """Drop inbound traffic from an address (raw, validated at dispatch)"""

    ip: str

    kind = "block_address"


@dataclass(frozen=True)
class SendAlert:
    """Notify operators"""

    message: str
    severity: str

    kind = "send_alert"


@dataclass(frozen=True)
class TriggerShutdown:
    """Halt the host (thermal danger)"""

    reason: str

    kind = "trigger_shutdown"


ResponseAction = Union[BlockAddress, SendAlert, TriggerShutdown]


@dataclass
class ActionRecord:
    """Outcome of dispatching the action resolved for one anomaly"""

    anomaly_id: str
    action: ResponseAction
    state: ActionState = ActionState.PENDING
    attempts: int = 0
    retries: int = 0
    error: Optional[Exception] = None
    note: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def copy(self) -> "ActionRecord":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "anomaly_id": self.anomaly_id,
            "action": self.action.kind,
            "target": _action_target(self.action),
            "state": self.state.value,
            "attempts": self.attempts,
            "retries": self.retries,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
            "note": self.note,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def _action_target(action: ResponseAction) -> str:
    if isinstance(action, BlockAddress):
        return action.ip
    if isinstance(action, TriggerShutdown):
        return action.reason
    return action.message


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient action failures"""

    max_attempts: int = 5
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay(self, retry: int) -> float:
        """Delay before the `retry`-th retry (1-based)"""
        return min(self.max_delay, self.base_delay * self.multiplier ** (retry - 1))


@dataclass
class MetricRule:
    """Per-metric override of the default severity tiers"""

    alert_threshold: Optional[float] = None
    block_threshold: Optional[float] = None
    enabled: bool = True


@dataclass
class ResponsePolicy:
    """Configuration for the response dispatcher"""

    # Severity tiers (score = |z-score|)
    alert_threshold: float = 3.0
    block_threshold: float = 5.0

    # Thermal protection
    shutdown_enabled: bool = True
    high_temp_threshold: float = 80.0

    # Overrides keyed by metric name ("host:8.8.8.8") or kind ("cpu", "threat")
    metric_rules: dict[str, MetricRule] = field(default_factory=dict)

    # Addresses that must never be blocked (gateway, management hosts)
    protected_addresses: list[str] = field(default_factory=list)

    action_timeout: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    workers: int = 4
    max_records: int = 200

    def __post_init__(self):
        if self.block_threshold < self.alert_threshold:
            raise ValueError("block_threshold must be >= alert_threshold")
        if self.action_timeout <= 0:
            raise ValueError("action_timeout must be > 0")
