"""
Error taxonomy shared by the monitoring engine and the response dispatcher.

- ValidationError: malformed external input (bad address, unknown metric)
- PersistError: baseline file could not be read or written
- ActionError: an external action failed or timed out
- StateError: an internal invariant was violated (programming defect)
"""


class MonitorError(Exception):
    """Base class for all agent errors"""


class ValidationError(MonitorError, ValueError):
    """Raised when externally derived input fails strict validation"""


class PersistError(MonitorError):
    """Raised when the baseline document cannot be loaded or saved"""


class ActionError(MonitorError):
    """Raised when an external action fails

    Args:
        message: Human readable description
        transient: True if the failure may succeed on retry (busy, timeout)
        timed_out: True if the call exceeded its timeout
    """

    def __init__(self, message: str, transient: bool = False, timed_out: bool = False):
        super().__init__(message)
        self.transient = transient or timed_out
        self.timed_out = timed_out


class StateError(MonitorError):
    """Raised when an invariant of the learned state is violated"""
