"""
Automated response to anomalies.

- ResponseDispatcher: policy → action, idempotent, retried, time-bounded
- BlockList: blocked addresses with in-flight tracking
- validate_address: strict syntax check for untrusted addresses
- controllers: FirewallController / AlertSink / ShutdownController adapters
"""

from .blocklist import BlockList, Claim
from .controllers import (
    AlertSink,
    CompositeAlertSink,
    DryRunFirewall,
    DryRunShutdown,
    FirewallController,
    IptablesFirewall,
    LogAlertSink,
    ShutdownController,
    SystemShutdown,
    WebhookAlertSink,
)
from .dispatcher import ResponseDispatcher
from .models import (
    ActionRecord,
    ActionState,
    BlockAddress,
    MetricRule,
    ResponseAction,
    ResponsePolicy,
    RetryPolicy,
    SendAlert,
    TriggerShutdown,
    ValidatedAddress,
)
from .validation import validate_address

__all__ = [
    "ActionRecord",
    "ActionState",
    "AlertSink",
    "BlockAddress",
    "BlockList",
    "Claim",
    "CompositeAlertSink",
    "DryRunFirewall",
    "DryRunShutdown",
    "FirewallController",
    "IptablesFirewall",
    "LogAlertSink",
    "MetricRule",
    "ResponseAction",
    "ResponseDispatcher",
    "ResponsePolicy",
    "RetryPolicy",
    "SendAlert",
    "ShutdownController",
    "SystemShutdown",
    "TriggerShutdown",
    "ValidatedAddress",
    "WebhookAlertSink",
    "validate_address",
]
