"""
Capabilities the dispatcher uses to act on the outside world.

The dispatcher only sees the Protocols below. Concrete adapters never build
shell strings: commands are argument lists and addresses arrive already
validated.
"""

import socket
import subprocess
import threading
from typing import Protocol, Sequence

import requests
import structlog

from src.core.errors import ActionError
from src.monitoring.models import utc_now

from .models import ValidatedAddress

logger = structlog.get_logger(__name__)

# iptables exit status for "resource problem" (xtables lock held by another process)
IPTABLES_RESOURCE_BUSY = 4


class FirewallController(Protocol):
    def block(self, ip: ValidatedAddress) -> None:
        """Block inbound traffic from `ip`; raise ActionError on failure"""

    def is_blocked(self, ip: ValidatedAddress) -> bool:
        """True if `ip` is already blocked"""


class AlertSink(Protocol):
    def notify(self, message: str, severity: str) -> None:
        """Deliver an alert; raise ActionError on failure"""


class ShutdownController(Protocol):
    def shutdown(self, reason: str) -> None:
        """Halt the host; raise ActionError on failure"""


def run_command(command: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
    """Run an argument-list command without a shell

    Raises:
        ActionError: timed out (transient) or the binary could not be started
    """
    try:
        return subprocess.run(
            list(command), capture_output=True, text=True, timeout=timeout, check=False
        )
    except subprocess.TimeoutExpired as e:
        raise ActionError(f"{command[0]} timed out after {timeout}s", timed_out=True) from e
    except OSError as e:
        raise ActionError(f"Failed to run {command[0]}: {e}") from e


class IptablesFirewall:
    """Blocks addresses with iptables/ip6tables DROP rules"""

    def __init__(self, chain: str = "INPUT", use_sudo: bool = False, command_timeout: float = 5.0):
        self.chain = chain
        self.use_sudo = use_sudo
        self.command_timeout = command_timeout

    def _command(self, ip: ValidatedAddress, operation: str) -> list[str]:
        binary = "ip6tables" if ip.version == 6 else "iptables"
        prefix = ["sudo", "-n"] if self.use_sudo else []
        return [*prefix, binary, "-w", operation, self.chain, "-s", ip.value, "-j", "DROP"]

    def block(self, ip: ValidatedAddress) -> None:
        proc = run_command(self._command(ip, "-A"), self.command_timeout)
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            busy = proc.returncode == IPTABLES_RESOURCE_BUSY or "lock" in stderr.lower()
            raise ActionError(
                f"iptables exited with {proc.returncode}: {stderr}", transient=busy
            )
        logger.info("Address blocked", ip=ip.value, chain=self.chain)

    def is_blocked(self, ip: ValidatedAddress) -> bool:
        proc = run_command(self._command(ip, "-C"), self.command_timeout)
        return proc.returncode == 0


class SystemShutdown:
    """Halts the host with shutdown(8)"""

    def __init__(self, use_sudo: bool = True, command_timeout: float = 10.0):
        self.use_sudo = use_sudo
        self.command_timeout = command_timeout

    def shutdown(self, reason: str) -> None:
        prefix = ["sudo", "-n"] if self.use_sudo else []
        proc = run_command([*prefix, "shutdown", "-h", "now", reason], self.command_timeout)
        if proc.returncode != 0:
            raise ActionError(f"shutdown exited with {proc.returncode}: {proc.stderr.strip()}")
        logger.critical("Host shutdown requested", reason=reason)


class LogAlertSink:
    """Writes alerts to the structured log"""

    def notify(self, message: str, severity: str) -> None:
        if severity == "critical":
            logger.critical("Alert", message=message, severity=severity)
        else:
            logger.warning("Alert", message=message, severity=severity)


class WebhookAlertSink:
    """POSTs alerts as JSON to a webhook URL"""

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.hostname = socket.gethostname()

    def notify(self, message: str, severity: str) -> None:
        payload = {
            "host": self.hostname,
            "message": message,
            "severity": severity,
            "timestamp": utc_now().isoformat(),
        }
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise ActionError(f"Webhook timed out: {e}", timed_out=True) from e
        except requests.ConnectionError as e:
            raise ActionError(f"Webhook unreachable: {e}", transient=True) from e
        except requests.RequestException as e:
            raise ActionError(f"Webhook request failed: {e}") from e

        if response.status_code >= 400:
            transient = response.status_code >= 500 or response.status_code == 429
            raise ActionError(
                f"Webhook returned HTTP {response.status_code}", transient=transient
            )
        logger.debug("Webhook alert delivered", url=self.url, status=response.status_code)


class CompositeAlertSink:
    """Fans an alert out to several sinks; fails if any sink fails"""

    def __init__(self, sinks: Sequence[AlertSink]):
        self.sinks = list(sinks)

    def notify(self, message: str, severity: str) -> None:
        errors: list[ActionError] = []
        for sink in self.sinks:
            try:
                sink.notify(message, severity)
            except ActionError as e:
                logger.warning("Alert sink failed", sink=type(sink).__name__, error=str(e))
                errors.append(e)
        if errors:
            raise ActionError(
                "; ".join(str(e) for e in errors),
                transient=all(e.transient for e in errors),
            )


class DryRunFirewall:
    """Records blocks in memory and logs them; no system change"""

    def __init__(self):
        self._lock = threading.Lock()
        self.blocked: set[str] = set()

    def block(self, ip: ValidatedAddress) -> None:
        with self._lock:
            self.blocked.add(ip.value)
        logger.warning("Dry run: would block address", ip=ip.value)

    def is_blocked(self, ip: ValidatedAddress) -> bool:
        with self._lock:
            return ip.value in self.blocked


class DryRunShutdown:
    """Logs the shutdown request instead of halting the host"""

    def __init__(self):
        self.requests: list[str] = []

    def shutdown(self, reason: str) -> None:
        self.requests.append(reason)
        logger.critical("Dry run: would shut down host", reason=reason)
