from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from attendance_backend.api.deps import db_session, get_current_principal
from attendance_backend.core.config import get_settings
from attendance_backend.schemas.auth import CurrentPrincipal
from attendance_backend.services.stats import dashboard_stats

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/dashboard")
def dashboard(
    start: date | None = None,
    end: date | None = None,
    threshold: int | None = None,
    _principal: CurrentPrincipal = Depends(get_current_principal),
    db: Session = db_session(),
):
    limit = threshold if threshold is not None else get_settings().shortage_threshold_percent
    return dashboard_stats(db, start=start, end=end, threshold=limit)
