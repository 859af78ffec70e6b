from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from attendance_backend.api.deps import db_session, get_current_principal
from attendance_backend.schemas.attendance import (
    AttendanceRecordIn,
    AttendanceResponse,
    AttendanceSyncRequest,
    MarkResponse,
    SyncResponse,
)
from attendance_backend.schemas.auth import CurrentPrincipal
from attendance_backend.services import attendance as attendance_service

router = APIRouter(prefix="/attendance", tags=["attendance"])


@router.get("", response_model=list[AttendanceResponse])
def list_attendance(
    on_date: date | None = Query(default=None, alias="date"),
    limit: int = 200,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    return attendance_service.list_attendance(db, on_date=on_date, limit=limit)


@router.post("/mark", response_model=MarkResponse)
def mark_attendance(
    payload: AttendanceRecordIn,
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    record = attendance_service.mark_attendance(db, payload, marked_by=principal.user_id)
    return MarkResponse(student_id=record.student_id, date=record.date)


@router.post("/sync", response_model=SyncResponse)
def sync_attendance(
    payload: AttendanceSyncRequest,
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    result = attendance_service.sync_attendance(db, payload.records, marked_by=principal.user_id)
    return SyncResponse(inserted=result.inserted, duplicates=result.duplicates, rejected=result.rejected)
