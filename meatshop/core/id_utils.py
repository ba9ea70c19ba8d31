from itertools import count
from threading import Lock

import shortuuid


def generate_id(prefix: str) -> str:
    return f"{prefix}_{shortuuid.ShortUUID().random(length=16)}"


class OrderNumberSequence:
    """Human-readable order numbers: ``ORD-001001``, ``ORD-001002``, ..."""

    def __init__(self, *, prefix: str, start: int):
        self.prefix = prefix
        self._counter = count(start + 1)
        self._lock = Lock()

    def next(self) -> str:
        with self._lock:
            value = next(self._counter)
        return f"{self.prefix}{value:06d}"

    def advance_past(self, order_number: str | None) -> None:
        """Skip numbers already handed out (e.g. by seeded orders)."""
        if not order_number or not order_number.startswith(self.prefix):
            return
        try:
            seen = int(order_number[len(self.prefix):])
        except ValueError:
            return
        with self._lock:
            current = next(self._counter)
            self._counter = count(max(current, seen + 1))
