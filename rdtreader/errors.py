"""Error taxonomy shared by the core pipeline and the HTTP boundary."""

from __future__ import annotations

from typing import Any


class RDTReaderError(Exception):
    """Base class for every typed outcome the core raises."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(RDTReaderError):
    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        *,
        field: str | None = None,
        errors: list[dict[str, str]] | None = None,
    ) -> None:
        super().__init__(message, code)
        self.errors = list(errors or [])
        if field is not None and not self.errors:
            self.errors.append({"field": field, "message": message})

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class QualityRejection(RDTReaderError):
    """Image decoded fine but failed the intake heuristics."""

    status_code = 422
    default_code = "POOR_IMAGE_QUALITY"

    def __init__(self, message: str, issues: list[Any] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["errors"] = [
            {"field": "image", "code": issue.code, "message": issue.message}
            for issue in self.issues
        ]
        return payload


class ClassificationFailure(RDTReaderError):
    status_code = 502
    default_code = "CLASSIFICATION_FAILED"
    public_message = "Test image could not be analysed. Please try again."


class ClassificationTimeout(ClassificationFailure):
    status_code = 504
    default_code = "CLASSIFICATION_TIMEOUT"
    public_message = "Test image analysis timed out. Please try again."


class NotFoundError(RDTReaderError):
    status_code = 404
    default_code = "NOT_FOUND"


class ForbiddenError(RDTReaderError):
    status_code = 403
    default_code = "FORBIDDEN"


class ConflictError(RDTReaderError):
    status_code = 409
    default_code = "CONFLICT"


class TransientStoreError(RDTReaderError):
    status_code = 503
    default_code = "STORAGE_UNAVAILABLE"
    public_message = "Storage is temporarily unavailable. Please try again."


class AuthenticationError(RDTReaderError):
    status_code = 401
    default_code = "NOT_AUTHENTICATED"


def public_payload(error: RDTReaderError) -> dict[str, Any]:
    """Payload safe to return to clients; hides internals of retryable failures."""
    message = getattr(error, "public_message", None)
    if message is not None:
        return {"detail": message, "code": error.code}
    return error.to_payload()


__all__ = [
    "RDTReaderError",
    "ValidationError",
    "QualityRejection",
    "ClassificationFailure",
    "ClassificationTimeout",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "TransientStoreError",
    "AuthenticationError",
    "public_payload",
]
