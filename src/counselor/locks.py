from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class StudentLocks:
    """Per-student exclusive sections.

    Conversation turns and background objective/summary jobs for the same
    student all enter ``section(student_id)``; different students never block
    each other. A student's lock is dropped once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # student_id -> [lock, holders and waiters]
        self._locks: Dict[str, List] = {}

    def _checkout(self, student_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(student_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[student_id] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, student_id: str) -> None:
        with self._guard:
            entry = self._locks[student_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[student_id]

    @contextmanager
    def section(self, student_id: str) -> Iterator[None]:
        lock = self._checkout(student_id)
        try:
            lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(student_id)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
