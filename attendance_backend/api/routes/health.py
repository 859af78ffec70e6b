from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_backend.api.deps import db_session
from attendance_backend.db.models import Student

router = APIRouter(tags=["health"])


@router.get("/health")
def health(db: Session = db_session()) -> dict:
    try:
        students = int(db.scalar(select(func.count(Student.id))) or 0)
        database = db.get_bind().dialect.name
    except SQLAlchemyError:
        students = None
        database = None
    return {
        "ok": True,
        "service": "classroom-attendance",
        "database": database,
        "students_count": students,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
