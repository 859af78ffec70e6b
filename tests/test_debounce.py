from datetime import date

from attendance_client.debounce import DailyMarks, DetectionDebouncer, best_per_label
from attendance_client.matcher import OUTCOME_MATCHED, OUTCOME_UNKNOWN, MatchResult


def test_cooldown_applies_per_label():
    debouncer = DetectionDebouncer(cooldown_seconds=45)
    assert debouncer.should_emit("R1", now=100.0)
    assert not debouncer.should_emit("R1", now=120.0)
    assert debouncer.should_emit("R2", now=120.0)
    assert not debouncer.should_emit("R1", now=144.9)
    assert debouncer.should_emit("R1", now=145.0)


def test_suppressed_detection_does_not_extend_window():
    debouncer = DetectionDebouncer(cooldown_seconds=10)
    assert debouncer.should_emit("R1", now=0.0)
    assert not debouncer.should_emit("R1", now=9.0)
    assert debouncer.should_emit("R1", now=10.0)


def test_forget_and_reset():
    debouncer = DetectionDebouncer(cooldown_seconds=60)
    debouncer.should_emit("R1", now=0.0)
    debouncer.should_emit("R2", now=0.0)

    debouncer.forget("R1")
    assert debouncer.should_emit("R1", now=1.0)
    assert not debouncer.should_emit("R2", now=1.0)

    debouncer.reset()
    assert debouncer.should_emit("R2", now=2.0)


def test_zero_cooldown_always_emits():
    debouncer = DetectionDebouncer(cooldown_seconds=0)
    assert all(debouncer.should_emit("R1", now=1.0) for _ in range(3))


def test_best_per_label_keeps_closest_match():
    results = [
        MatchResult("R1", 0.40, OUTCOME_MATCHED),
        MatchResult("R2", 0.30, OUTCOME_MATCHED),
        MatchResult("R1", 0.20, OUTCOME_MATCHED),
        MatchResult("unknown", 0.90, OUTCOME_UNKNOWN),
    ]
    best = best_per_label(results)
    assert [(item.label, item.distance) for item in best] == [("R1", 0.20), ("R2", 0.30)]


def test_daily_marks_reset_on_new_day():
    marks = DailyMarks()
    monday, tuesday = date(2024, 3, 4), date(2024, 3, 5)
    marks.add(7, monday)
    assert marks.contains(7, monday)
    assert not marks.contains(8, monday)
    assert not marks.contains(7, tuesday)

    marks.add(8, tuesday)
    assert not marks.contains(7, monday)
    assert marks.contains(8, tuesday)
    assert len(marks) == 1

    marks.clear()
    assert not marks.contains(8, tuesday)
