"""
Response vocabulary shared by every endpoint.

Successful writes answer ``{"status": <code>, "success": <message>}`` and
failures answer ``{"status": <code>, "error": <message>}``. Handlers raise
``ApiError`` and the application's exception handlers render it.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse


class Messages:
    USER = "user "
    ACCOUNT = "account "
    TRANSACTION = "transaction "
    BUDGET = "budget "

    CREATED = "created successfully"
    UPDATED = "updated successfully"
    DELETED = "deleted successfully"
    NOT_FOUND = "not found"

    INTERNAL_ERROR = "server error. please try again"
    INCORRECT_FIELD_COUNT = "incorrect numbers of fields"
    MISSING_FIELDS = "missing required fields"
    INVALID_CREDENTIAL = "invalid credentials"
    AUTH_REQUIRED = "authentication required"
    INVALID_TOKEN = "invalid or expired token"
    MISSING_TOKEN = "missing token"
    EXPIRED_TOKEN = "verification link expired"
    EMAIL_EXISTS = "email already exists"
    NOT_VERIFIED = "email not verified"
    ALREADY_VERIFIED = "email already verified"
    VERIFICATION_SENT = "verification email already sent"
    RE_VERIFICATION = "verification email sent"
    EMAIL_VERIFIED = "email verified successfully"
    RESET_SENT = "password reset email sent"
    NEW_PASSWORD = "password changed successfully"
    PASSWORD_MISMATCH = "passwords do not match"
    NUMBER_TAKEN = "account number is already taken"
    BUDGET_EXISTS = "budget already exists for this category and month"
    LOGGED_IN = "logged in successfully"


class ApiError(Exception):
    """A reportable failure carrying its HTTP status and client-facing message."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def bad_request(message: str) -> ApiError:
    return ApiError(400, message)


def unauthorized(message: str) -> ApiError:
    return ApiError(401, message)


def not_found(message: str) -> ApiError:
    return ApiError(404, message)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": status_code, "error": message})
