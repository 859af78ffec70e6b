import pytest

from attendance_backend.core.config import get_settings
from attendance_backend.core.security import create_access_token, hash_password
from attendance_backend.db.models import User


@pytest.fixture
def teacher(db_factory):
    with db_factory() as db:
        user = User(username="teacher1", password_hash=hash_password("s3cret!"), role="teacher")
        db.add(user)
        db.commit()
        return user.id


@pytest.fixture
def auth_required(monkeypatch):
    monkeypatch.setattr(get_settings(), "auth_required", True)


def test_token_issued_for_valid_credentials(client, teacher):
    response = client.post("/api/v1/auth/token", json={"username": "teacher1", "password": "s3cret!"})
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["role"] == "teacher"
    assert body["access_token"]


def test_token_refused_for_wrong_password(client, teacher):
    response = client.post("/api/v1/auth/token", json={"username": "teacher1", "password": "nope"})
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"


def test_requests_without_token_use_stub_teacher(client, add_student):
    add_student(1)
    client.post("/api/v1/attendance/mark", json={"student_id": 1, "date": "2024-03-01"})
    assert client.get("/api/v1/attendance").json()[0]["marked_by"] == get_settings().stub_user_id


def test_missing_token_rejected_when_auth_required(client, auth_required):
    response = client.get("/api/v1/students")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"


def test_health_stays_open_when_auth_required(client, auth_required):
    assert client.get("/api/v1/health").status_code == 200


def test_bearer_token_identifies_marker(client, teacher, add_student, auth_required):
    add_student(3)
    token = client.post("/api/v1/auth/token", json={"username": "teacher1", "password": "s3cret!"}).json()
    headers = {"Authorization": f"Bearer {token['access_token']}"}

    response = client.post("/api/v1/attendance/mark", json={"student_id": 3, "date": "2024-03-01"}, headers=headers)
    assert response.status_code == 200
    rows = client.get("/api/v1/attendance", headers=headers).json()
    assert rows[0]["marked_by"] == teacher


def test_garbage_token_rejected(client):
    response = client.get("/api/v1/students", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_token_signed_with_other_secret_rejected(client, monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "jwt_secret", "another-secret")
    token = create_access_token(subject="1", role="admin")
    monkeypatch.undo()
    response = client.get("/api/v1/students", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
