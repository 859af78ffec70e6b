from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("attendance.errors")


class ApiError(Exception):
    """Error carried to the client as ``{"error": code, "message": message}``."""

    def __init__(self, status_code: int, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.status_code = status_code
        self.code = code
        self.message = message or code


class InvalidPayload(ApiError):
    def __init__(self, message: str = "Invalid payload.") -> None:
        super().__init__(status.HTTP_400_BAD_REQUEST, "invalid_payload", message)


class AlreadyMarked(ApiError):
    def __init__(self, message: str = "Attendance already marked for this student on this date") -> None:
        super().__init__(status.HTTP_409_CONFLICT, "already_marked", message)


class NotFound(ApiError):
    def __init__(self, message: str = "Not found.") -> None:
        super().__init__(status.HTTP_404_NOT_FOUND, "not_found", message)


def error_body(code: str, message: str) -> dict:
    return {"error": code, "message": message}


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else "Malformed request body."
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("invalid_payload", message),
        )

    @app.exception_handler(SQLAlchemyError)
    async def _database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("server_error", "Database operation failed."),
        )
