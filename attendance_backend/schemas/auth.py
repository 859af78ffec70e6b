from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str


@dataclass(frozen=True)
class CurrentPrincipal:
    user_id: int | None
    role: str
