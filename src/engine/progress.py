# src/engine/progress.py
"""
ProgressTracker: in-memory, per-scan progress state for polling clients.

Records are immutable snapshots. Every write builds a new snapshot and
swaps it into the map under the lock, so a reader holding a snapshot is
never affected by a concurrent update.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from engine.config import settings
from engine.records import ProgressRecord, Stage, utcnow

STAGE_PERCENTAGE = {
    Stage.QUEUED: 0,
    Stage.CLONING: 5,
    Stage.COUNTING_FILES: 10,
    Stage.EXTRACTING: 15,
    Stage.PROCESSING_RESULTS: 90,
    Stage.COMPLETED: 100,
}
SCANNING_FLOOR = 20
SCANNING_SPAN = 65


def stage_percentage(stage: Stage, processed: int, total: int, previous: int) -> int:
    if stage == Stage.FAILED:
        return previous
    if stage == Stage.SCANNING_FILE:
        if total > 0:
            fraction = min(1.0, max(0, processed) / total)
            return int(round(SCANNING_FLOOR + fraction * SCANNING_SPAN))
        return SCANNING_FLOOR
    return STAGE_PERCENTAGE[stage]


class ProgressTracker:
    def __init__(
        self,
        completed_ttl: Optional[float] = None,
        failed_ttl: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records: Dict[str, ProgressRecord] = {}
        self.lock = threading.Lock()
        self.completed_ttl = settings.progress_ttl_completed_seconds if completed_ttl is None else completed_ttl
        self.failed_ttl = settings.progress_ttl_failed_seconds if failed_ttl is None else failed_ttl
        self.clock = clock

    def start(self, scan_id: str, total_files: int = 0) -> ProgressRecord:
        now = self.clock()
        record = ProgressRecord(
            scan_id=scan_id,
            total_files=total_files,
            started_at=now,
            updated_at=now,
        )
        with self.lock:
            self.records[scan_id] = record
        logging.info(f"[scan_id={scan_id}] Progress tracking started ({total_files} files)")
        return record

    def update(self, scan_id: str, stage: Stage, data: Optional[Dict[str, Any]] = None) -> Optional[ProgressRecord]:
        data = data or {}
        stage = Stage(stage)
        with self.lock:
            current = self.records.get(scan_id)
            if current is None:
                logging.warning(f"[scan_id={scan_id}] No progress record to update")
                return None
            if current.stage.is_terminal:
                return current

            total = int(data.get("total_files", current.total_files) or 0)
            processed = int(data.get("processed_files", current.processed_files) or 0)
            if total:
                processed = min(processed, total)
            computed = stage_percentage(stage, processed, total, current.percentage)
            changes = {
                "stage": stage,
                "percentage": max(current.percentage, computed),
                "total_files": total,
                "processed_files": processed,
                "current_file": data.get("current_file", current.current_file),
                "findings_count": int(data.get("findings_count", current.findings_count)),
                "updated_at": self.clock(),
            }
            if stage == Stage.FAILED:
                changes["error"] = data.get("error", current.error)
            record = current.model_copy(update=changes)
            self.records[scan_id] = record

        if stage == Stage.SCANNING_FILE and total:
            logging.debug(f"[scan_id={scan_id}] {record.percentage}% ({processed}/{total}) {record.current_file or ''}")
        else:
            logging.info(f"[scan_id={scan_id}] {stage.value} - {record.percentage}%")
        return record

    def get(self, scan_id: str) -> Optional[ProgressRecord]:
        with self.lock:
            record = self.records.get(scan_id)
            if record is not None and self._expired(record, self.clock()):
                del self.records[scan_id]
                return None
            return record

    def complete(self, scan_id: str, findings_count: int = 0) -> Optional[ProgressRecord]:
        return self._finish(scan_id, Stage.COMPLETED, self.completed_ttl, findings_count=findings_count)

    def fail(self, scan_id: str, error: Any) -> Optional[ProgressRecord]:
        message = str(error) or error.__class__.__name__
        return self._finish(scan_id, Stage.FAILED, self.failed_ttl, error=message)

    def _finish(self, scan_id: str, stage: Stage, ttl: float, **data) -> Optional[ProgressRecord]:
        now = self.clock()
        with self.lock:
            current = self.records.get(scan_id)
            if current is None:
                logging.warning(f"[scan_id={scan_id}] No progress record to finish as {stage.value}")
                return None
            if current.stage.is_terminal:
                return current
            changes = {
                "stage": stage,
                "percentage": 100 if stage == Stage.COMPLETED else current.percentage,
                "updated_at": now,
                "finished_at": now,
                "expires_at": now + timedelta(seconds=ttl),
            }
            if stage == Stage.COMPLETED:
                changes["findings_count"] = data.get("findings_count", current.findings_count)
                if current.total_files:
                    changes["processed_files"] = current.total_files
            else:
                changes["error"] = data.get("error")
            record = current.model_copy(update=changes)
            self.records[scan_id] = record
        if stage == Stage.COMPLETED:
            logging.info(f"[scan_id={scan_id}] Progress completed")
        else:
            logging.info(f"[scan_id={scan_id}] Progress failed: {record.error}")
        return record

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop terminal records whose retention window has passed."""
        now = now or self.clock()
        with self.lock:
            expired = [scan_id for scan_id, record in self.records.items() if self._expired(record, now)]
            for scan_id in expired:
                del self.records[scan_id]
        for scan_id in expired:
            logging.info(f"[scan_id={scan_id}] Cleaned up progress data")
        return len(expired)

    def active(self) -> List[ProgressRecord]:
        with self.lock:
            return [r for r in self.records.values() if not r.stage.is_terminal]

    def stats(self) -> Dict[str, int]:
        with self.lock:
            records = list(self.records.values())
        return {
            "total": len(records),
            "active": sum(1 for r in records if not r.stage.is_terminal),
            "completed": sum(1 for r in records if r.stage == Stage.COMPLETED),
            "failed": sum(1 for r in records if r.stage == Stage.FAILED),
        }

    @staticmethod
    def _expired(record: ProgressRecord, now: datetime) -> bool:
        return record.expires_at is not None and record.expires_at <= now
