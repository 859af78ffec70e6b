from __future__ import annotations

from fastapi import Depends, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from attendance_backend.core.config import get_settings
from attendance_backend.core.errors import ApiError
from attendance_backend.core.security import safe_decode_token
from attendance_backend.db.session import get_db
from attendance_backend.schemas.auth import CurrentPrincipal

bearer_scheme = HTTPBearer(auto_error=False)


def db_session() -> Session:
    return Depends(get_db)  # type: ignore[return-value]


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentPrincipal:
    """Resolve the caller; without a token the configured stub teacher is used."""
    settings = get_settings()
    if credentials is None:
        if settings.auth_required:
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing bearer token.")
        return CurrentPrincipal(user_id=settings.stub_user_id, role=settings.stub_user_role)

    payload = safe_decode_token(credentials.credentials)
    if not payload:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Invalid or expired token.")
    subject = str(payload.get("sub", ""))
    return CurrentPrincipal(
        user_id=int(subject) if subject.isdigit() else None,
        role=str(payload.get("role", "")),
    )
