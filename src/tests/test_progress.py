from datetime import datetime, timedelta, timezone

from engine.progress import ProgressTracker
from engine.records import Stage


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _tracker():
    clock = FakeClock()
    return ProgressTracker(completed_ttl=3600, failed_ttl=600, clock=clock), clock


def test_start_and_repeated_get_are_identical():
    tracker, _ = _tracker()
    tracker.start("s1")
    first = tracker.get("s1")
    second = tracker.get("s1")
    assert first == second
    assert first.stage == Stage.QUEUED
    assert first.percentage == 0


def test_scanning_percentage_follows_processed_files():
    tracker, _ = _tracker()
    tracker.start("s1")
    tracker.update("s1", Stage.COUNTING_FILES, {"total_files": 10})
    record = tracker.update("s1", Stage.SCANNING_FILE, {"processed_files": 2, "current_file": "a.py"})
    assert record.percentage == 33
    assert record.total_files == 10
    assert record.current_file == "a.py"


def test_percentage_never_goes_backwards():
    tracker, _ = _tracker()
    tracker.start("s1")
    tracker.update("s1", Stage.SCANNING_FILE, {"processed_files": 8, "total_files": 10})
    record = tracker.update("s1", Stage.COUNTING_FILES, {})
    assert record.stage == Stage.COUNTING_FILES
    assert record.percentage == 72


def test_processed_is_clamped_to_total():
    tracker, _ = _tracker()
    tracker.start("s1")
    record = tracker.update("s1", "scanning_file", {"processed_files": 50, "total_files": 10})
    assert record.processed_files == 10
    assert record.percentage == 85


def test_earlier_snapshots_are_unaffected_by_updates():
    tracker, _ = _tracker()
    tracker.start("s1")
    before = tracker.get("s1")
    tracker.update("s1", Stage.EXTRACTING, {})
    assert before.stage == Stage.QUEUED
    assert tracker.get("s1").stage == Stage.EXTRACTING


def test_complete_sets_full_percentage_and_expiry():
    tracker, clock = _tracker()
    tracker.start("s1")
    tracker.update("s1", Stage.SCANNING_FILE, {"processed_files": 1, "total_files": 4})
    record = tracker.complete("s1", findings_count=3)
    assert record.stage == Stage.COMPLETED
    assert record.percentage == 100
    assert record.findings_count == 3
    assert record.processed_files == 4

    clock.advance(3599)
    assert tracker.get("s1") is not None
    clock.advance(2)
    assert tracker.get("s1") is None


def test_fail_keeps_percentage_and_records_error():
    tracker, clock = _tracker()
    tracker.start("s1")
    tracker.update("s1", Stage.EXTRACTING, {})
    record = tracker.fail("s1", "archive is corrupt")
    assert record.stage == Stage.FAILED
    assert record.percentage == 15
    assert record.error == "archive is corrupt"
    clock.advance(601)
    assert tracker.get("s1") is None


def test_updates_after_terminal_are_ignored():
    tracker, _ = _tracker()
    tracker.start("s1")
    tracker.complete("s1")
    record = tracker.update("s1", Stage.SCANNING_FILE, {"processed_files": 1})
    assert record.stage == Stage.COMPLETED
    assert tracker.fail("s1", "late").stage == Stage.COMPLETED


def test_update_of_unknown_scan_returns_none():
    tracker, _ = _tracker()
    assert tracker.update("missing", Stage.CLONING) is None
    assert tracker.get("missing") is None


def test_sweep_and_stats():
    tracker, clock = _tracker()
    for scan_id in ("a", "b", "c"):
        tracker.start(scan_id)
    tracker.complete("a")
    tracker.fail("b", "boom")
    assert tracker.stats() == {"total": 3, "active": 1, "completed": 1, "failed": 1}
    assert [r.scan_id for r in tracker.active()] == ["c"]

    clock.advance(700)
    assert tracker.sweep() == 1
    assert tracker.stats()["failed"] == 0
    clock.advance(3600)
    assert tracker.sweep() == 1
    assert tracker.stats() == {"total": 1, "active": 1, "completed": 0, "failed": 0}
