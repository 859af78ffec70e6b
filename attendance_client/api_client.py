from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Sequence

import requests

from .config import ClientConfig
from .exceptions import SyncError
from .records import AttendanceRecord

OUTCOME_ACCEPTED = "accepted"
OUTCOME_ALREADY_MARKED = "already_marked"
OUTCOME_INVALID = "invalid"
OUTCOME_TRANSIENT = "transient"


@dataclass(frozen=True)
class ApiResult:
    outcome: str
    status_code: int | None = None
    body: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def satisfied(self) -> bool:
        # A conflict means the student is already marked, which is the goal.
        return self.outcome in (OUTCOME_ACCEPTED, OUTCOME_ALREADY_MARKED)

    @property
    def error_code(self) -> str | None:
        code = self.body.get("error")
        return str(code) if code is not None else None


def _classify(status_code: int, body: dict[str, Any]) -> ApiResult:
    if 200 <= status_code < 300:
        return ApiResult(OUTCOME_ACCEPTED, status_code, body)
    if status_code == 409:
        return ApiResult(OUTCOME_ALREADY_MARKED, status_code, body, body.get("message"))
    if status_code == 400:
        return ApiResult(OUTCOME_INVALID, status_code, body, body.get("message") or body.get("error"))
    return ApiResult(
        OUTCOME_TRANSIENT,
        status_code,
        body,
        f"HTTP {status_code}: {body.get('message') or body.get('error') or 'server error'}",
    )


class AttendanceApiClient:
    """Thin HTTP client for the attendance backend.

    ``session`` can be any object exposing ``request(method, url, ...)`` with
    requests' keyword arguments; tests pass a FastAPI ``TestClient``.
    """

    def __init__(self, cfg: ClientConfig, session: Any | None = None) -> None:
        self.cfg = cfg
        self.session = session if session is not None else requests.Session()
        self._lock = threading.RLock()
        self._session_lock = threading.Lock()
        self._token: str | None = None

    def _url(self, path: str) -> str:
        return f"{self.cfg.api_root}{path}"

    def _login(self, force: bool = False) -> str | None:
        if not self.cfg.login_username:
            return None
        with self._lock:
            if not force and self._token:
                return self._token

        with self._session_lock:
            resp = self.session.request(
                "POST",
                self._url("/auth/token"),
                json={"username": self.cfg.login_username, "password": self.cfg.login_password},
                timeout=self.cfg.request_timeout_seconds,
            )
        if resp.status_code != 200:
            raise SyncError(f"Login failed with HTTP {resp.status_code}.")
        try:
            token = str(resp.json()["access_token"])
        except (ValueError, KeyError, TypeError) as exc:
            raise SyncError("Login response did not contain an access token.") from exc
        with self._lock:
            self._token = token
        return token

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retry_auth: bool = True,
    ) -> tuple[int, Any]:
        token = self._login()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        with self._session_lock:
            resp = self.session.request(
                method,
                self._url(path),
                json=payload,
                params=params,
                headers=headers,
                timeout=self.cfg.request_timeout_seconds,
            )
        if resp.status_code == 401 and retry_auth and self.cfg.login_username:
            self._login(force=True)
            return self._request(method, path, payload=payload, params=params, retry_auth=False)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return resp.status_code, body

    def _post_classified(self, path: str, payload: dict[str, Any]) -> ApiResult:
        try:
            status_code, body = self._request("POST", path, payload=payload)
        except (requests.RequestException, SyncError) as exc:
            return ApiResult(OUTCOME_TRANSIENT, None, {}, str(exc))
        return _classify(status_code, body if isinstance(body, dict) else {})

    def mark_attendance(self, record: AttendanceRecord) -> ApiResult:
        return self._post_classified("/attendance/mark", record.to_payload())

    def sync_attendance(self, records: Sequence[AttendanceRecord]) -> ApiResult:
        return self._post_classified("/attendance/sync", {"records": [item.to_payload() for item in records]})

    def fetch_embeddings(self, limit: int = 1000) -> list[dict[str, Any]]:
        try:
            status_code, body = self._request("GET", "/embeddings", params={"limit": limit})
        except requests.RequestException as exc:
            raise SyncError(f"Embeddings request failed: {exc}") from exc
        if status_code != 200:
            raise SyncError(f"Embeddings request failed with HTTP {status_code}.")
        if not isinstance(body, list):
            raise SyncError("Embeddings endpoint did not return an array.")
        return body

    def register_face(self, student_id: int, embedding: Sequence[float]) -> dict[str, Any]:
        payload = {"student_id": int(student_id), "embedding": [float(value) for value in embedding]}
        try:
            status_code, body = self._request("POST", "/face/register", payload=payload)
        except requests.RequestException as exc:
            raise SyncError(f"Face registration failed: {exc}") from exc
        if status_code != 200:
            message = body.get("message") if isinstance(body, dict) else None
            raise SyncError(f"Face registration failed with HTTP {status_code}: {message or 'error'}")
        return body

    def is_healthy(self) -> bool:
        try:
            status_code, body = self._request("GET", "/health")
        except (requests.RequestException, SyncError):
            return False
        return status_code == 200 and bool(isinstance(body, dict) and body.get("ok"))
