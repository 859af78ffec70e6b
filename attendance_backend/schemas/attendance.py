from __future__ import annotations

from datetime import date as date_type, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AttendanceRecordIn(BaseModel):
    # Loose types: the service normalises each field or rejects with invalid_payload.
    model_config = ConfigDict(extra="ignore")

    student_id: Any = None
    date: Any = None
    status: Any = "present"
    method: Any = None
    confidence: Any = None


class AttendanceSyncRequest(BaseModel):
    records: list[AttendanceRecordIn] = Field(default_factory=list)


class MarkResponse(BaseModel):
    success: bool = True
    student_id: int
    date: date_type


class SyncResponse(BaseModel):
    success: bool = True
    inserted: int
    duplicates: int = 0
    rejected: int = 0


class AttendanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: int
    date: date_type
    status: str
    method: str | None = None
    confidence: float | None = None
    marked_by: int | None = None
    created_at: datetime | None = None
