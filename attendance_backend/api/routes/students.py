from __future__ import annotations

import csv
import io
import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from attendance_backend.api.deps import db_session, get_current_principal
from attendance_backend.core.config import get_settings
from attendance_backend.core.errors import ApiError, InvalidPayload, NotFound
from attendance_backend.db.models import Attendance, FaceEmbedding, Student, StudentFace
from attendance_backend.schemas.auth import CurrentPrincipal
from attendance_backend.schemas.student import (
    FacePreviewRequest,
    StudentCreate,
    StudentImportRequest,
    StudentResponse,
    StudentUpdate,
)

router = APIRouter(prefix="/students", tags=["students"])
logger = logging.getLogger("attendance.students")

EXPORT_COLUMNS = ("id", "name", "roll", "section", "department", "course", "phone", "year", "semester", "email")


def _get_or_404(db: Session, student_id: int) -> Student:
    row = db.get(Student, student_id, options=[selectinload(Student.face_preview)])
    if row is None:
        raise NotFound(f"Student {student_id} not found.")
    return row


def _commit_or_conflict(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(status.HTTP_409_CONFLICT, "duplicate", "A student with this roll already exists.") from exc


@router.get("", response_model=list[StudentResponse])
def list_students(
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    return db.scalars(select(Student).options(selectinload(Student.face_preview)).order_by(Student.id.desc())).all()


@router.get("/export")
def export_students(
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for row in db.scalars(select(Student).order_by(Student.id)).all():
        writer.writerow(["" if getattr(row, column) is None else getattr(row, column) for column in EXPORT_COLUMNS])
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="students.csv"'},
    )


@router.post("/import")
def import_students(
    payload: StudentImportRequest,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    if not payload.students:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "no_students", "students must be a non-empty array")
    db.add_all([Student(**item.model_dump()) for item in payload.students])
    _commit_or_conflict(db)
    logger.info("Imported %d students", len(payload.students))
    return {"success": True, "inserted": len(payload.students)}


@router.get("/{student_id}", response_model=StudentResponse)
def get_student(
    student_id: int,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    return _get_or_404(db, student_id)


@router.post("", response_model=StudentResponse)
def create_student(
    payload: StudentCreate,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    row = Student(**payload.model_dump())
    db.add(row)
    _commit_or_conflict(db)
    db.refresh(row)
    return row


@router.put("/{student_id}", response_model=StudentResponse)
def update_student(
    student_id: int,
    payload: StudentUpdate,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    row = _get_or_404(db, student_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_payload", "No student fields to update.")
    if "name" in changes and not changes["name"]:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_payload", "name cannot be empty.")
    for key, value in changes.items():
        setattr(row, key, value)
    _commit_or_conflict(db)
    db.refresh(row)
    return row


@router.delete("/{student_id}")
def delete_student(
    student_id: int,
    cascade: bool = True,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    row = _get_or_404(db, student_id)
    if not cascade:
        dependents = db.scalar(select(func.count(Attendance.id)).where(Attendance.student_id == student_id)) or 0
        dependents += db.scalar(select(func.count(FaceEmbedding.id)).where(FaceEmbedding.student_id == student_id)) or 0
        if dependents:
            raise ApiError(
                status.HTTP_409_CONFLICT,
                "has_dependents",
                "Student has attendance or face data; delete with cascade=true.",
            )
    db.delete(row)
    db.commit()
    logger.info("Deleted student %s (cascade=%s)", student_id, cascade)
    return {"success": True}


@router.post("/{student_id}/face-preview")
def upload_face_preview(
    student_id: int,
    payload: FacePreviewRequest,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    if len(payload.data_url) > get_settings().face_preview_max_chars:
        raise InvalidPayload("Face preview image is too large.")
    row = _get_or_404(db, student_id)
    if row.face_preview is None:
        row.face_preview = StudentFace(data_url=payload.data_url)
    else:
        row.face_preview.data_url = payload.data_url
    db.commit()
    logger.info("Stored face preview for student %s (%d chars)", student_id, len(payload.data_url))
    return {"success": True}
