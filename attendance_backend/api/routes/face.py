from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from attendance_backend.api.deps import db_session, get_current_principal
from attendance_backend.schemas.auth import CurrentPrincipal
from attendance_backend.schemas.face import EmbeddingRow, FaceRegisterRequest, FaceRegisterResponse
from attendance_backend.services import attendance as attendance_service

router = APIRouter(tags=["face"])


@router.get("/embeddings", response_model=list[EmbeddingRow])
def list_embeddings(
    limit: int = 200,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    return attendance_service.load_embeddings(db, limit=limit)


@router.post("/face/register", response_model=FaceRegisterResponse)
def register_face(
    payload: FaceRegisterRequest,
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    row = attendance_service.register_face(db, payload, created_by=principal.user_id)
    return FaceRegisterResponse(id=row.id)
