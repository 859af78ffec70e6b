from __future__ import annotations

import threading
import time
from datetime import date
from typing import Iterable

from .matcher import MatchResult


class DetectionDebouncer:
    """Per-label rate limiter for detection events.

    This only keeps the client from posting the same face every frame. The
    one-mark-per-day rule is enforced by the server independently.
    """

    def __init__(self, cooldown_seconds: float = 45.0) -> None:
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._last_emitted: dict[str, float] = {}
        self._lock = threading.Lock()

    def should_emit(self, label: str, now: float | None = None) -> bool:
        moment = time.monotonic() if now is None else float(now)
        with self._lock:
            last = self._last_emitted.get(label)
            if last is not None and moment - last < self.cooldown_seconds:
                return False
            self._last_emitted[label] = moment
            return True

    def forget(self, label: str) -> None:
        with self._lock:
            self._last_emitted.pop(label, None)

    def reset(self) -> None:
        with self._lock:
            self._last_emitted.clear()


def best_per_label(matches: Iterable[MatchResult]) -> list[MatchResult]:
    """Keep the closest occurrence of each recognised label in a frame."""
    best: dict[str, MatchResult] = {}
    for result in matches:
        if not result.matched:
            continue
        current = best.get(result.label)
        if current is None or result.distance < current.distance:
            best[result.label] = result
    return sorted(best.values(), key=lambda item: item.distance)


class DailyMarks:
    """Student ids already persisted (server or offline queue) for one calendar day.

    Entries for an earlier day are dropped as soon as a later day is seen.
    """

    def __init__(self) -> None:
        self._day: date | None = None
        self._student_ids: set[int] = set()
        self._lock = threading.Lock()

    def add(self, student_id: int, day: date) -> None:
        with self._lock:
            if day != self._day:
                self._day = day
                self._student_ids = set()
            self._student_ids.add(int(student_id))

    def contains(self, student_id: int, day: date) -> bool:
        with self._lock:
            return day == self._day and int(student_id) in self._student_ids

    def clear(self) -> None:
        with self._lock:
            self._day = None
            self._student_ids = set()

    def __len__(self) -> int:
        return len(self._student_ids)
