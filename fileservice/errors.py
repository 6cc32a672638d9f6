"""
Error types raised by the file lifecycle core.

Every caller-facing failure carries an HTTP-ish status code and a message that
names the concrete limit or item involved, so the web layer can forward it
verbatim.
"""
from typing import Dict, Optional


class FileServiceError(Exception):
    """Base exception for file service operations."""

    status_code = 500
    reason = "error"

    def to_payload(self) -> Dict[str, object]:
        return {"error": str(self), "reason": self.reason}


class ValidationError(FileServiceError, ValueError):
    """Raised for bad input such as empty names or a changed extension."""

    status_code = 400
    reason = "validation_error"


class FileTooLargeError(FileServiceError):
    """Raised when a file exceeds the per-file size limit."""

    status_code = 413
    reason = "file_too_large"

    def __init__(self, file_name: str, file_size: int, max_size: int) -> None:
        self.file_name = file_name
        self.file_size = file_size
        self.max_size = max_size
        super().__init__(
            f"File '{file_name}' ({file_size} bytes) exceeds the maximum file size "
            f"of {max_size // (1024 * 1024)} MB"
        )


class UnsafeFileTypeError(FileServiceError):
    """Raised when the extension or declared content type is not allowed."""

    status_code = 415
    reason = "unsafe_file_type"

    def __init__(self, file_name: str, content_type: Optional[str], detail: str) -> None:
        self.file_name = file_name
        self.content_type = content_type
        super().__init__(detail)


class QuotaExceededError(FileServiceError):
    """Raised when storing a file would exceed the configured disk quota."""

    status_code = 507
    reason = "quota_exceeded"

    def __init__(self, current_usage: int, requested: int, quota_limit: int) -> None:
        from .storage import format_bytes

        self.current_usage = current_usage
        self.requested = requested
        self.quota_limit = quota_limit
        super().__init__(
            f"Storing {format_bytes(requested)} would exceed the disk quota of "
            f"{format_bytes(quota_limit)} ({format_bytes(current_usage)} in use)"
        )

    def to_payload(self) -> Dict[str, object]:
        payload = super().to_payload()
        payload.update(
            {
                "current_usage": self.current_usage,
                "requested": self.requested,
                "quota_limit": self.quota_limit,
            }
        )
        return payload


class NotFoundError(FileServiceError):
    """Raised when a file or user does not exist."""

    status_code = 404
    reason = "not_found"


class ForbiddenError(FileServiceError):
    """Raised when the caller is not allowed to act on a file."""

    status_code = 403
    reason = "forbidden"


class ConflictError(FileServiceError):
    """Raised when a rename target already exists."""

    status_code = 409
    reason = "conflict"


class StorageIOError(FileServiceError):
    """Raised when file bytes or a metadata document cannot be written."""

    status_code = 500
    reason = "storage_io_error"


class JobExecutionError(FileServiceError):
    """Per-file failure inside a cleanup or expiry batch."""

    reason = "job_execution_error"

    def __init__(self, file_name: str, detail: str) -> None:
        self.file_name = file_name
        self.detail = detail
        super().__init__(f"{file_name}: {detail}")

    def to_payload(self) -> Dict[str, object]:
        return {"file_name": self.file_name, "reason": self.detail}
