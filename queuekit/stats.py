"""Thread-safe counters of processed and dropped tasks."""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class Task:
    """One processed task: how long it took and whether it was dropped."""

    duration: float = 0.0
    drop: bool = False
    description: str = ""


class Metrics:
    """Accumulates task durations and drop counts under a name."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._tasks = 0
        self._drops = 0
        self._total = 0.0
        self._max = 0.0

    def add(self, task: Task) -> None:
        with self._lock:
            if task.drop:
                self._drops += 1
                return
            self._tasks += 1
            self._total += task.duration
            self._max = max(self._max, task.duration)

    def add_drop(self) -> None:
        with self._lock:
            self._drops += 1

    @property
    def tasks(self) -> int:
        with self._lock:
            return self._tasks

    @property
    def drops(self) -> int:
        with self._lock:
            return self._drops

    @property
    def total_duration(self) -> float:
        with self._lock:
            return self._total

    @property
    def max_duration(self) -> float:
        with self._lock:
            return self._max

    @property
    def average_duration(self) -> float:
        with self._lock:
            return self._total / self._tasks if self._tasks else 0.0

    def __repr__(self) -> str:
        return f"Metrics(name={self.name!r}, tasks={self.tasks}, drops={self.drops})"