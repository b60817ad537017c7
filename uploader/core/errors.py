"""
Error taxonomy for the upload service.

Every error that can reach a client carries a stable code, an HTTP status and
a human-readable message. The API layer renders them through a single
exception handler (see uploader.main).
"""

from typing import Any, Dict, Optional


class UploaderError(Exception):
    """Base class for errors surfaced to API clients."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details
        super().__init__(self.message)

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
        }
        if include_details and self.details:
            body["details"] = self.details
        return body


class ValidationError(UploaderError):
    """User-correctable input problem, detected before any upstream call."""

    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class ArchiveExtractionError(UploaderError):
    """The uploaded archive could not be decompressed or parsed."""

    code = "ARCHIVE_EXTRACTION_FAILED"
    status_code = 422
    default_message = "Failed to extract the archive"


class NameCollisionExhausted(UploaderError):
    """No free repository name was found within the attempt cap."""

    code = "REPOSITORY_NAME_EXHAUSTED"
    status_code = 409
    default_message = "Could not find an unused repository name"


class RepositoryCreationError(UploaderError):
    code = "REPOSITORY_CREATION_FAILED"
    status_code = 502
    default_message = "Failed to create the repository"


class FileWriteError(UploaderError):
    """A single file could not be committed. Tolerated by the orchestrator."""

    code = "FILE_UPLOAD_FAILED"
    status_code = 502
    default_message = "Failed to upload a file"

    def __init__(self, path: str, message: Optional[str] = None, **kwargs: Any):
        self.path = path
        super().__init__(message or f"Failed to create file {path}", **kwargs)


class UpstreamRateLimitError(UploaderError):
    """GitHub API rate limit reached; the caller should retry later."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "GitHub API rate limit reached. Please retry later"

    def __init__(
        self, message: Optional[str] = None, retry_after: Optional[int] = None, **kwargs: Any
    ):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class UpstreamAuthError(UploaderError):
    """GitHub rejected the access credential."""

    code = "UPSTREAM_AUTH_FAILED"
    status_code = 401
    default_message = "GitHub rejected the access token"


class UpstreamError(UploaderError):
    """Any other unexpected GitHub API failure."""

    code = "UPSTREAM_ERROR"
    status_code = 502
    default_message = "GitHub API request failed"


class UploadTimeoutError(UploaderError):
    code = "UPLOAD_TIMEOUT"
    status_code = 504
    default_message = "The upload took too long to process"


class OperationCancelled(UploaderError):
    """A blocking step stopped early because its upload was abandoned."""

    code = "UPLOAD_CANCELLED"
    status_code = 504
    default_message = "The upload was cancelled"


class AuthenticationError(UploaderError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class InternalError(UploaderError):
    """Catch-all for unanticipated failures."""
