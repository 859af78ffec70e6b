from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Union

STATUS_PRESENT = "present"
STATUS_ABSENT = "absent"
STATUS_LATE = "late"

METHOD_FACE = "face"
METHOD_MANUAL = "manual"


@dataclass(frozen=True)
class ResolvedIdentity:
    student_id: int


@dataclass(frozen=True)
class UnresolvedIdentity:
    label: str


Identity = Union[ResolvedIdentity, UnresolvedIdentity]


@dataclass(frozen=True)
class DetectionEvent:
    label: str
    distance: float
    captured_at: float


@dataclass
class AttendanceRecord:
    student_id: int | None
    date: date
    status: str = STATUS_PRESENT
    method: str = METHOD_FACE
    confidence: float | None = None
    label: str | None = None
    synced: bool = False

    @property
    def resolved(self) -> bool:
        return self.student_id is not None

    @classmethod
    def from_detection(cls, identity: Identity, distance: float, day: date | None = None) -> "AttendanceRecord":
        confidence = round(min(1.0, max(0.0, 1.0 - float(distance))), 3)
        if isinstance(identity, ResolvedIdentity):
            return cls(student_id=identity.student_id, date=day or date.today(), confidence=confidence)
        return cls(student_id=None, date=day or date.today(), confidence=confidence, label=identity.label)

    def to_payload(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "date": self.date.isoformat(),
            "status": self.status,
            "method": self.method,
            "confidence": self.confidence,
        }

    def to_json(self) -> dict[str, Any]:
        body = self.to_payload()
        body["label"] = self.label
        body["synced"] = self.synced
        return body

    @classmethod
    def from_json(cls, body: dict[str, Any]) -> "AttendanceRecord":
        student_id = body.get("student_id")
        return cls(
            student_id=int(student_id) if student_id is not None else None,
            date=date.fromisoformat(str(body["date"])),
            status=str(body.get("status") or STATUS_PRESENT),
            method=str(body.get("method") or METHOD_FACE),
            confidence=body.get("confidence"),
            label=body.get("label"),
            synced=bool(body.get("synced", False)),
        )


@dataclass
class QueuedRecord:
    id: int
    record: AttendanceRecord
    created_at: datetime


@dataclass(frozen=True)
class QueueBatch:
    token: str
    items: tuple[QueuedRecord, ...] = field(default_factory=tuple)

    @property
    def ids(self) -> list[int]:
        return [item.id for item in self.items]

    def __len__(self) -> int:
        return len(self.items)
