from typing import Dict, Optional


class ApiError(Exception):
    """Base error rendered as ``{"error": category, "message": detail}``."""

    category = "internal_error"
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.category, "message": self.message}


class ValidationError(ApiError):
    category = "validation_error"
    status_code = 400


class AuthenticationRequired(ApiError):
    category = "authentication_required"
    status_code = 401


class Forbidden(ApiError):
    category = "forbidden"
    status_code = 403


class NotFound(ApiError):
    category = "not_found"
    status_code = 404


class UpstreamServiceError(ApiError):
    """An image, payment, shipping or translation provider failed."""

    category = "upstream_service_error"
    status_code = 502


class StorageUnavailable(ApiError):
    """The persistence backend could not be reached or refused the operation."""

    category = "storage_unavailable"
    status_code = 503
