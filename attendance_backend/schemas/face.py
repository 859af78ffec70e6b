from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class FaceRegisterRequest(BaseModel):
    student_id: Any = None
    embedding: Any = None


class FaceRegisterResponse(BaseModel):
    success: bool = True
    id: int


class EmbeddingRow(BaseModel):
    student_id: int
    roll: str | None
    name: str | None
    embedding: list[float]
