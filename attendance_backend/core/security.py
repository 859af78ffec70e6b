from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import numpy as np
from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import get_settings

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(subject: str, role: str) -> str:
    settings = get_settings()
    expires = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_minutes)
    payload = {
        "sub": subject,
        "role": role,
        "exp": expires,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def safe_decode_token(token: str) -> dict | None:
    try:
        return decode_access_token(token)
    except JWTError:
        return None


def coerce_embedding(values: Any, min_length: int) -> np.ndarray:
    """Validate a raw descriptor and return it as a float32 vector.

    Descriptors are stored as produced by the client; no normalisation is
    applied because the client matches by Euclidean distance.
    """
    if not isinstance(values, (list, tuple)):
        raise ValueError("Embedding must be an array of numbers.")
    try:
        vector = np.asarray([float(item) for item in values], dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise ValueError("Embedding must contain only numbers.") from exc
    if vector.ndim != 1 or vector.size < min_length:
        raise ValueError(f"Embedding must contain at least {min_length} values.")
    if not bool(np.isfinite(vector).all()):
        raise ValueError("Embedding contains non-finite values.")
    return vector
