from __future__ import annotations

from collections import deque
from typing import Deque, List

from .errors import ErrorRecord

DEFAULT_CAPACITY = 100


class ErrorLog:
    """Rolling in-memory log of classified failures; oldest records drop first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._records: Deque[ErrorRecord] = deque(maxlen=capacity)

    def append(self, record: ErrorRecord) -> None:
        self._records.append(record)

    def records(self) -> List[ErrorRecord]:
        return list(self._records)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
