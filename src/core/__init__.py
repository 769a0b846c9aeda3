"""
Core utilities shared across the agent.
"""

from .errors import ActionError, MonitorError, PersistError, StateError, ValidationError
from .logger import level_from_env, setup_logging

__all__ = [
    "ActionError",
    "MonitorError",
    "PersistError",
    "StateError",
    "ValidationError",
    "level_from_env",
    "setup_logging",
]
