"""
Host agent: psutil sampling, background loops and CLI.
"""

from .config import DEFAULT_CONFIG, DEV_CONFIG, RASPBERRY_PI_CONFIG, AgentConfig
from .runner import MonitorAgent
from .sampler import PsutilSampler

__all__ = [
    "DEFAULT_CONFIG",
    "DEV_CONFIG",
    "RASPBERRY_PI_CONFIG",
    "AgentConfig",
    "MonitorAgent",
    "PsutilSampler",
]
