from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .exceptions import QueueError
from .records import AttendanceRecord, QueueBatch, QueuedRecord


class OfflineAttendanceQueue:
    """Durable FIFO of attendance records waiting for server acknowledgement.

    ``drain`` never removes anything: it hands out a snapshot of rows with
    their ids, and ``clear`` deletes exactly those ids once the server has
    confirmed them. Rows enqueued while a flush is in flight are untouched.
    Unresolved records (no student id) are kept apart from drains until
    ``resolve_label`` maps them to a student.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    create table if not exists attendance_queue (
                        id integer primary key autoincrement,
                        student_id integer null,
                        label text null,
                        record_json text not null,
                        created_at text not null
                    )
                    """
                )
                conn.execute(
                    "create index if not exists ix_attendance_queue_label on attendance_queue (label)"
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to initialise offline queue at {self.db_path}: {exc}") from exc

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> QueuedRecord:
        body = json.loads(row["record_json"])
        return QueuedRecord(
            id=int(row["id"]),
            record=AttendanceRecord.from_json(body),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def enqueue(self, record: AttendanceRecord) -> int:
        record.synced = False
        body = json.dumps(record.to_json(), separators=(",", ":"))
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute(
                    "insert into attendance_queue (student_id, label, record_json, created_at) values (?, ?, ?, ?)",
                    (record.student_id, record.label, body, now),
                )
                conn.commit()
                return int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to enqueue attendance record: {exc}") from exc

    def drain(self, limit: int | None = None) -> QueueBatch:
        query = "select id, record_json, created_at from attendance_queue where student_id is not null order by id asc"
        params: tuple = ()
        if limit is not None:
            query += " limit ?"
            params = (max(1, int(limit)),)
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to read offline queue: {exc}") from exc
        return QueueBatch(token=uuid.uuid4().hex, items=tuple(self._row_to_item(row) for row in rows))

    def clear(self, batch: QueueBatch) -> int:
        return self.discard(batch.ids)

    def discard(self, ids: list[int]) -> int:
        if not ids:
            return 0
        clean_ids = [int(item) for item in ids]
        placeholders = ",".join("?" for _ in clean_ids)
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute(f"delete from attendance_queue where id in ({placeholders})", clean_ids)
                conn.commit()
                return int(cursor.rowcount)
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to remove acknowledged records: {exc}") from exc

    def pending_unresolved(self) -> list[QueuedRecord]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(
                    "select id, record_json, created_at from attendance_queue where student_id is null order by id asc"
                ).fetchall()
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to read offline queue: {exc}") from exc
        return [self._row_to_item(row) for row in rows]

    def resolve_label(self, label: str, student_id: int) -> int:
        """Attach a student id to every unresolved record carrying ``label``."""
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(
                    "select id, record_json from attendance_queue where student_id is null and label = ?",
                    (label,),
                ).fetchall()
                for row in rows:
                    body = json.loads(row["record_json"])
                    body["student_id"] = int(student_id)
                    conn.execute(
                        "update attendance_queue set student_id = ?, record_json = ? where id = ?",
                        (int(student_id), json.dumps(body, separators=(",", ":")), int(row["id"])),
                    )
                conn.commit()
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to reconcile label {label!r}: {exc}") from exc
        return len(rows)

    def size(self) -> int:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute("select count(*) as c from attendance_queue").fetchone()
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to count offline queue: {exc}") from exc
        return int(row["c"]) if row else 0

    def counts(self) -> dict[str, int]:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute(
                    """
                    select
                        sum(case when student_id is not null then 1 else 0 end) as resolved,
                        sum(case when student_id is null then 1 else 0 end) as unresolved
                    from attendance_queue
                    """
                ).fetchone()
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to count offline queue: {exc}") from exc
        return {"resolved": int(row["resolved"] or 0), "unresolved": int(row["unresolved"] or 0)}
