from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable

from cryptography.fernet import InvalidToken
from fastapi import status
from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_backend.core.config import get_settings
from attendance_backend.core.errors import AlreadyMarked, ApiError, InvalidPayload
from attendance_backend.core.security import coerce_embedding
from attendance_backend.db.models import Attendance, FaceEmbedding, Student
from attendance_backend.schemas.attendance import AttendanceRecordIn
from attendance_backend.schemas.face import FaceRegisterRequest
from attendance_backend.services.encryption import embedding_crypto

logger = logging.getLogger("attendance.service")

VALID_STATUSES = ("present", "absent", "late")


@dataclass(frozen=True)
class NormalizedMark:
    student_id: int
    date: date
    status: str
    method: str | None
    confidence: float | None

    @property
    def key(self) -> tuple[int, date]:
        return (self.student_id, self.date)

    def to_row(self, marked_by: int | None) -> Attendance:
        return Attendance(
            student_id=self.student_id,
            date=self.date,
            status=self.status,
            method=self.method,
            confidence=self.confidence,
            marked_by=marked_by,
        )


@dataclass
class SyncResult:
    inserted: int = 0
    duplicates: int = 0
    rejected: int = 0


def coerce_student_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit() and int(text) > 0:
            return int(text)
    return None


def parse_mark_date(value: Any) -> date:
    if value is None or value == "":
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            # Accept full ISO timestamps; only the calendar day matters.
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    raise InvalidPayload(f"date must be an ISO calendar date (YYYY-MM-DD), got {value!r}")


def normalize_status(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in VALID_STATUSES else "present"


def normalize_method(value: Any, default: str, max_length: int) -> str:
    text = str(value).strip() if value is not None else ""
    return (text or default)[:max_length]


def normalize_confidence(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidPayload("confidence must be a number between 0 and 1") from exc
    if not math.isfinite(number):
        raise InvalidPayload("confidence must be a number between 0 and 1")
    return round(min(1.0, max(0.0, number)), 3)


def normalize_record(payload: AttendanceRecordIn, default_method: str) -> NormalizedMark:
    student_id = coerce_student_id(payload.student_id)
    if student_id is None:
        raise InvalidPayload("student_id required (numeric)")
    settings = get_settings()
    return NormalizedMark(
        student_id=student_id,
        date=parse_mark_date(payload.date),
        status=normalize_status(payload.status),
        method=normalize_method(payload.method, default_method, settings.method_max_length),
        confidence=normalize_confidence(payload.confidence),
    )


def _mark_exists(db: Session, key: tuple[int, date]) -> bool:
    student_id, day = key
    found = db.scalar(
        select(Attendance.id).where(Attendance.student_id == student_id, Attendance.date == day).limit(1)
    )
    return found is not None


def mark_attendance(db: Session, payload: AttendanceRecordIn, marked_by: int | None = None) -> NormalizedMark:
    """Insert a single mark; a second mark for the same student and day is a conflict."""
    record = normalize_record(payload, default_method="face")
    if db.get(Student, record.student_id) is None:
        raise InvalidPayload(f"Unknown student_id {record.student_id}")

    db.add(record.to_row(marked_by))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if _mark_exists(db, record.key):
            logger.info("Duplicate mark skipped for student %s on %s", record.student_id, record.date)
            raise AlreadyMarked()
        raise

    logger.info(
        "Attendance marked for student %s on %s (%s, %s)",
        record.student_id,
        record.date,
        record.status,
        record.method,
    )
    return record


def _insert_each(db: Session, records: Iterable[NormalizedMark], marked_by: int | None) -> int:
    inserted = 0
    for record in records:
        db.add(record.to_row(marked_by))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            continue
        inserted += 1
    return inserted


def sync_attendance(
    db: Session,
    records: list[AttendanceRecordIn],
    marked_by: int | None = None,
) -> SyncResult:
    """Bulk insert with the same per-day uniqueness as ``mark_attendance``.

    Invalid rows and rows for unknown students are counted as rejected.
    Rows repeating a key inside the batch, or already stored, are counted as
    duplicates. Everything else goes in with a single commit; if a concurrent
    writer wins a key in the meantime the batch is retried row by row.
    """
    if not records:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "no_records", "records must be a non-empty array")

    result = SyncResult()
    unique: dict[tuple[int, date], NormalizedMark] = {}
    for raw in records:
        try:
            record = normalize_record(raw, default_method="manual")
        except InvalidPayload as exc:
            result.rejected += 1
            logger.warning("Rejected sync record %s: %s", raw.model_dump(), exc.message)
            continue
        if record.key in unique:
            result.duplicates += 1
            continue
        unique[record.key] = record

    if unique:
        student_ids = {key[0] for key in unique}
        known = set(db.scalars(select(Student.id).where(Student.id.in_(student_ids))).all())
        for key in [key for key in unique if key[0] not in known]:
            logger.warning("Rejected sync record for unknown student %s", key[0])
            del unique[key]
            result.rejected += 1

    if unique:
        days = {key[1] for key in unique}
        rows = db.execute(
            select(Attendance.student_id, Attendance.date).where(
                Attendance.student_id.in_({key[0] for key in unique}),
                Attendance.date.in_(days),
            )
        ).all()
        existing = {(int(row[0]), row[1]) for row in rows}
        pending = [record for key, record in unique.items() if key not in existing]
        result.duplicates += len(unique) - len(pending)

        if pending:
            db.add_all([record.to_row(marked_by) for record in pending])
            try:
                db.commit()
                result.inserted = len(pending)
            except IntegrityError:
                db.rollback()
                logger.info("Bulk insert raced with another writer; retrying %d rows individually", len(pending))
                result.inserted = _insert_each(db, pending, marked_by)
                result.duplicates += len(pending) - result.inserted

    logger.info(
        "Attendance sync: inserted=%d duplicates=%d rejected=%d",
        result.inserted,
        result.duplicates,
        result.rejected,
    )
    return result


def list_attendance(db: Session, on_date: date | None = None, limit: int = 200) -> list[Attendance]:
    query = select(Attendance)
    if on_date is not None:
        query = query.where(Attendance.date == on_date)
    query = query.order_by(desc(Attendance.created_at), desc(Attendance.id)).limit(max(1, min(1000, limit)))
    return list(db.scalars(query).all())


def register_face(db: Session, payload: FaceRegisterRequest, created_by: int | None = None) -> FaceEmbedding:
    settings = get_settings()
    student_id = coerce_student_id(payload.student_id)
    if student_id is None:
        raise InvalidPayload("student_id required (numeric)")
    try:
        vector = coerce_embedding(payload.embedding, settings.min_embedding_length)
    except ValueError as exc:
        raise InvalidPayload(str(exc)) from exc

    student = db.get(Student, student_id)
    if student is None:
        raise InvalidPayload(f"Unknown student_id {student_id}")

    row = FaceEmbedding(
        student_id=student_id,
        embedding_ciphertext=embedding_crypto.encrypt(vector),
        dimensions=int(vector.size),
        created_by=created_by,
    )
    db.add(row)
    student.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    logger.info("Registered face descriptor for student %s (length %d)", student_id, row.dimensions)
    return row


def load_embeddings(db: Session, limit: int = 200) -> list[dict[str, Any]]:
    settings = get_settings()
    capped = max(1, min(settings.embeddings_max_limit, limit))
    rows = db.execute(
        select(FaceEmbedding, Student)
        .join(Student, FaceEmbedding.student_id == Student.id)
        .order_by(FaceEmbedding.id)
        .limit(capped)
    ).all()

    output: list[dict[str, Any]] = []
    for embedding, student in rows:
        try:
            vector = embedding_crypto.decrypt(embedding.embedding_ciphertext)
        except InvalidToken:
            logger.warning("Skipping undecryptable embedding %s for student %s", embedding.id, student.id)
            continue
        if vector.size < settings.min_embedding_length:
            logger.warning("Skipping embedding for student %s, length %d", student.id, vector.size)
            continue
        output.append(
            {
                "student_id": student.id,
                "roll": student.roll,
                "name": student.name,
                "embedding": [float(value) for value in vector],
            }
        )
    return output
