"""
Set of blocked addresses with in-flight tracking.

A dispatcher claims an address before calling the firewall. A second dispatch
for the same address either sees it already blocked or waits for the claim
holder to finish, so the firewall is called once per address.
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Callable

from src.monitoring.models import utc_now


class Claim(Enum):
    BLOCKED = "blocked"  # already blocked, nothing to do
    IN_FLIGHT = "in_flight"  # another dispatch is blocking it; wait on the event
    CLAIMED = "claimed"  # caller must block it, then release()


class BlockList:
    """Currently blocked addresses and their insertion time"""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._blocked: dict[str, datetime] = {}
        self._in_flight: dict[str, threading.Event] = {}

    def claim(self, address: str) -> tuple[Claim, threading.Event | None]:
        with self._lock:
            if address in self._blocked:
                return Claim.BLOCKED, None
            event = self._in_flight.get(address)
            if event is not None:
                return Claim.IN_FLIGHT, event
            event = threading.Event()
            self._in_flight[address] = event
            return Claim.CLAIMED, event

    def release(self, address: str, blocked: bool) -> None:
        """End a claim, recording the address if the block succeeded"""
        with self._lock:
            if blocked:
                self._blocked[address] = self._clock()
            event = self._in_flight.pop(address, None)
        if event is not None:
            event.set()

    def add(self, address: str, blocked_at: datetime | None = None) -> None:
        with self._lock:
            self._blocked[address] = blocked_at or self._clock()

    def remove(self, address: str) -> bool:
        with self._lock:
            return self._blocked.pop(address, None) is not None

    def blocked_at(self, address: str) -> datetime | None:
        with self._lock:
            return self._blocked.get(address)

    def items(self) -> dict[str, datetime]:
        with self._lock:
            return dict(self._blocked)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._blocked

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocked)
