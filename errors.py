"""
Error taxonomy shared by the repositories, the aggregation engine and the routes.

Every error carries the HTTP status it maps to; the exception handlers in
``main`` turn them into the uniform error envelope.
"""
from typing import Any, List, Optional


class ApiError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[List[Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        self.errors = errors or []
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "statusCode": self.status_code,
            "data": None,
            "message": self.message,
            "success": False,
            "errors": self.errors,
        }


class ValidationError(ApiError):
    status_code = 400
    default_message = "Invalid request"


class UnauthenticatedError(ApiError):
    status_code = 401
    default_message = "Unauthorized request"


class AuthorizationError(ApiError):
    status_code = 403
    default_message = "You are not allowed to perform this action"


class NotFoundError(ApiError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(ApiError):
    status_code = 409
    default_message = "Resource already exists"


class DependencyError(ApiError):
    status_code = 500
    default_message = "Internal server error"


class UploadError(DependencyError):
    default_message = "Error uploading file"
