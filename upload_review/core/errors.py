"""Error taxonomy for the upload lifecycle.

Every error carries a stable machine-readable ``code`` and the HTTP status
the adapter answers with. Client mistakes map to 4xx, collaborator
failures to 5xx.
"""
from typing import Any, Dict, Optional


class UploadServiceError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "code": self.status_code}


class ValidationError(UploadServiceError):
    code = "validation_error"
    status_code = 400


class NotFoundError(UploadServiceError):
    code = "not_found"
    status_code = 404


class TempFileNotFoundError(NotFoundError):
    """Raised by temp storage when a key is missing or has expired."""

    def __init__(self, key: str):
        super().__init__(f"temp file not found: {key}")
        self.key = key


class InvalidStateError(UploadServiceError):
    code = "invalid_state"
    status_code = 409


class DependencyFailure(UploadServiceError):
    """A collaborator call failed while running ``operation`` at ``step``."""

    code = "dependency_failure"
    status_code = 502

    def __init__(self, operation: str, step: str, message: Optional[str] = None):
        super().__init__(message or f"{operation} failed at step {step}")
        self.operation = operation
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["operation"] = self.operation
        body["step"] = self.step
        return body


class PartialCompletionError(DependencyFailure):
    """An irreversible step already succeeded before ``step`` failed."""

    code = "partial_completion"


class OperationTimeoutError(DependencyFailure):
    code = "timeout"
    status_code = 504
