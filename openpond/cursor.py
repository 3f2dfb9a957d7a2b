"""
Delivery cursor: the timestamp of the newest delivered message.
"""

import threading


class DeliveryCursor:
    """Monotone millisecond timestamp. 0 means nothing delivered yet."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def read(self) -> int:
        with self._lock:
            return self._value

    def advance_to(self, candidate: int) -> int:
        """Move forward to `candidate` if it is newer. Returns the resulting value."""
        with self._lock:
            if candidate > self._value:
                self._value = candidate
            return self._value

    def __repr__(self) -> str:
        return f"DeliveryCursor({self.read()})"
