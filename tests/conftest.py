import os
import tempfile

os.environ.setdefault("CLIENT_STATE_DIR", tempfile.mkdtemp(prefix="attendance-client-tests-"))
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EMBEDDING_CIPHER_KEY"] = "test-embedding-key"
os.environ["JWT_SECRET"] = "test-jwt-secret"

import pytest
import requests
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from attendance_backend.db.base import Base
from attendance_backend.db.models import Student
from attendance_backend.db.session import enable_sqlite_foreign_keys, get_db
from attendance_backend.main import app
from attendance_client.config import ClientConfig


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def client(db_factory):
    def _get_db():
        db = db_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def add_student(db_factory):
    def _add(student_id: int, name: str = "", roll: str | None = None) -> int:
        with db_factory() as db:
            db.add(Student(id=student_id, name=name or f"Student {student_id}", roll=roll or f"R{student_id}"))
            db.commit()
        return student_id

    return _add


class FlakyTransport:
    """Routes the client's HTTP calls into the TestClient; can simulate going offline."""

    def __init__(self, client: TestClient) -> None:
        self.client = client
        self.online = True
        self.fail_with_status: int | None = None
        self.calls: list[tuple[str, str]] = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url))
        if not self.online:
            raise requests.ConnectionError("server unreachable")
        if self.fail_with_status is not None:
            return _StaticResponse(self.fail_with_status, {"error": "server_error"})
        return self.client.request(method, url, **kwargs)


class _StaticResponse:
    def __init__(self, status_code: int, body: dict) -> None:
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


@pytest.fixture
def transport(client):
    return FlakyTransport(client)


@pytest.fixture
def client_config(tmp_path):
    return ClientConfig(
        api_base_url="http://testserver",
        login_username="",
        queue_db_path=str(tmp_path / "offline_attendance.db"),
        request_timeout_seconds=5.0,
    )
