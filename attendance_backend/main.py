from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from attendance_backend.api.routes import attendance, auth, face, health, stats, students
from attendance_backend.core.config import get_settings
from attendance_backend.core.errors import install_exception_handlers
from attendance_backend.core.security import hash_password
from attendance_backend.db.base import Base
from attendance_backend.db.models import User
from attendance_backend.db.session import SessionLocal, engine

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("attendance.backend")


def bootstrap_defaults() -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        admin = db.scalar(select(User).where(User.username == settings.bootstrap_admin_username))
        if admin is None:
            admin = User(
                username=settings.bootstrap_admin_username,
                password_hash=hash_password(settings.bootstrap_admin_password),
                role=settings.bootstrap_admin_role,
                is_active=True,
            )
            db.add(admin)
            db.commit()
            logger.info("Created bootstrap admin user '%s'.", settings.bootstrap_admin_username)


@asynccontextmanager
async def lifespan(app: FastAPI):
    bootstrap_defaults()
    logger.info("Attendance backend ready (env=%s, auth_required=%s)", settings.app_env, settings.auth_required)
    yield


app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_exception_handlers(app)

app.include_router(health.router, prefix=settings.api_prefix)
app.include_router(auth.router, prefix=settings.api_prefix)
app.include_router(students.router, prefix=settings.api_prefix)
app.include_router(face.router, prefix=settings.api_prefix)
app.include_router(attendance.router, prefix=settings.api_prefix)
app.include_router(stats.router, prefix=settings.api_prefix)
