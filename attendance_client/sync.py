from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from .api_client import (
    OUTCOME_ACCEPTED,
    OUTCOME_ALREADY_MARKED,
    OUTCOME_INVALID,
    AttendanceApiClient,
)
from .logger import setup_logger
from .offline_queue import OfflineAttendanceQueue
from .records import (
    METHOD_MANUAL,
    STATUS_PRESENT,
    AttendanceRecord,
    Identity,
)

SUBMIT_MARKED = "marked"
SUBMIT_ALREADY_MARKED = "already_marked"
SUBMIT_QUEUED = "queued"
SUBMIT_REJECTED = "rejected"


@dataclass
class SubmitOutcome:
    status: str
    record: AttendanceRecord
    queue_id: int | None = None
    message: str = ""


@dataclass
class FlushReport:
    sent: int = 0
    inserted: int = 0
    duplicates: int = 0
    rejected: int = 0
    remaining: int = 0
    error: str | None = None
    skipped: bool = False


@dataclass
class SessionReport:
    submitted: int = 0
    inserted: int = 0
    duplicates: int = 0
    rejected: int = 0
    queued: int = 0
    error: str | None = None


class AttendanceSyncService:
    """Delivers attendance records to the server, falling back to the offline queue."""

    def __init__(
        self,
        api: AttendanceApiClient,
        queue: OfflineAttendanceQueue,
        flush_batch: int = 50,
    ) -> None:
        self.api = api
        self.queue = queue
        self.flush_batch = max(1, int(flush_batch))
        self.logger = setup_logger(self.__class__.__name__)
        self._flush_lock = threading.Lock()

    def submit_detection(self, identity: Identity, distance: float, day: date | None = None) -> SubmitOutcome:
        return self.submit(AttendanceRecord.from_detection(identity, distance, day))

    def submit(self, record: AttendanceRecord) -> SubmitOutcome:
        if not record.resolved:
            queue_id = self.queue.enqueue(record)
            self.logger.info("Label %s has no student id; queued for reconciliation (#%d)", record.label, queue_id)
            return SubmitOutcome(SUBMIT_QUEUED, record, queue_id, "Student id not resolved. Queued.")

        result = self.api.mark_attendance(record)
        if result.outcome == OUTCOME_ACCEPTED:
            record.synced = True
            self.logger.info("Attendance marked for student %s on %s", record.student_id, record.date)
            return SubmitOutcome(SUBMIT_MARKED, record, message="Attendance marked.")
        if result.outcome == OUTCOME_ALREADY_MARKED:
            record.synced = True
            self.logger.info("Student %s already marked on %s", record.student_id, record.date)
            return SubmitOutcome(SUBMIT_ALREADY_MARKED, record, message="Already marked today.")
        if result.outcome == OUTCOME_INVALID:
            self.logger.warning("Server rejected record for student %s: %s", record.student_id, result.error)
            return SubmitOutcome(SUBMIT_REJECTED, record, message=result.error or "Invalid payload.")

        queue_id = self.queue.enqueue(record)
        self.logger.warning(
            "Mark for student %s failed (%s); queued offline (#%d)",
            record.student_id,
            result.error,
            queue_id,
        )
        return SubmitOutcome(SUBMIT_QUEUED, record, queue_id, f"Offline, queued: {result.error}")

    def flush(self, max_items: int | None = None) -> FlushReport:
        """Send one batch of queued records; remove only the rows the server confirmed."""
        if not self._flush_lock.acquire(blocking=False):
            return FlushReport(skipped=True, remaining=self.queue.size())
        try:
            batch = self.queue.drain(max_items if max_items is not None else self.flush_batch)
            report = FlushReport(sent=len(batch))
            if not batch:
                report.remaining = self.queue.size()
                return report

            result = self.api.sync_attendance([item.record for item in batch.items])
            if result.outcome == OUTCOME_ACCEPTED:
                self.queue.clear(batch)
                report.inserted = int(result.body.get("inserted", 0))
                report.duplicates = int(result.body.get("duplicates", 0))
                report.rejected = int(result.body.get("rejected", 0))
                if report.rejected:
                    self.logger.warning("Server rejected %d queued records in batch %s", report.rejected, batch.token)
                self.logger.info(
                    "Flushed batch %s: sent=%d inserted=%d duplicates=%d",
                    batch.token,
                    report.sent,
                    report.inserted,
                    report.duplicates,
                )
            else:
                report.error = result.error or result.error_code or result.outcome
                self.logger.warning("Flush of batch %s failed, keeping %d records: %s", batch.token, len(batch), report.error)
            report.remaining = self.queue.size()
            return report
        finally:
            self._flush_lock.release()

    def flush_all(self) -> FlushReport:
        total = FlushReport()
        while True:
            report = self.flush()
            total.sent += report.sent
            total.inserted += report.inserted
            total.duplicates += report.duplicates
            total.rejected += report.rejected
            total.remaining = report.remaining
            total.skipped = report.skipped
            if report.error or report.skipped or report.sent == 0:
                total.error = report.error
                return total

    def submit_session(
        self,
        student_ids: Iterable[int],
        day: date | None = None,
        status: str = STATUS_PRESENT,
    ) -> SessionReport:
        """Submit a manually finalised class session as one batch."""
        when = day or date.today()
        records = [
            AttendanceRecord(student_id=int(student_id), date=when, status=status, method=METHOD_MANUAL)
            for student_id in dict.fromkeys(student_ids)
        ]
        report = SessionReport(submitted=len(records))
        if not records:
            report.error = "Nothing to submit."
            return report

        result = self.api.sync_attendance(records)
        if result.outcome == OUTCOME_ACCEPTED:
            report.inserted = int(result.body.get("inserted", 0))
            report.duplicates = int(result.body.get("duplicates", 0))
            report.rejected = int(result.body.get("rejected", 0))
            for record in records:
                record.synced = True
            self.logger.info("Session submitted: %d records, %d inserted", len(records), report.inserted)
            return report
        if result.outcome == OUTCOME_INVALID:
            report.rejected = len(records)
            report.error = result.error or "Invalid payload."
            self.logger.warning("Session submission rejected: %s", report.error)
            return report

        for record in records:
            self.queue.enqueue(record)
        report.queued = len(records)
        report.error = result.error
        self.logger.warning("Session submission failed (%s); %d records queued", result.error, len(records))
        return report

    def reconcile(self, label: str, student_id: int) -> int:
        count = self.queue.resolve_label(label, student_id)
        self.logger.info("Reconciled %d queued records for label %s -> student %s", count, label, student_id)
        return count
