# clock.py
import threading
from typing import Optional


class LogicalClock:
    """
    Lamport clock. Every RPC boundary crossing advances it to
    max(local, received) + 1, so timestamps respect causality across nodes.
    """

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def advance(self, received: Optional[int] = None) -> int:
        seen = int(received) if received is not None else 0
        with self._lock:
            self._value = max(self._value, seen) + 1
            return self._value

    def __repr__(self) -> str:
        return f"LogicalClock({self._value})"


# shared by every node in the process unless one is given its own clock
process_clock = LogicalClock()
