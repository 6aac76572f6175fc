"""
Error taxonomy for the storage gateway.

Every failure that reaches a caller is a ``PixrepoError`` carrying a
machine-readable code, a human-readable message, structured details and the
HTTP status the API layer answers with.
"""

from typing import Any, Optional


class PixrepoError(Exception):
    status_code = 500
    default_code = "PIXREPO_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PixrepoError):
    """Missing or malformed input, rejected before any remote call."""

    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)


class ConflictError(PixrepoError):
    """A file with the same name already exists in the target folder or store."""

    status_code = 409
    default_code = "FILE_EXISTS"

    def __init__(self, filename: str, location: Optional[str] = None):
        super().__init__(
            f'File "{filename}" already exists, rename it and retry',
            details={"filename": filename, "location": location},
        )
        self.filename = filename


class FileNotFound(PixrepoError):
    status_code = 404
    default_code = "FILE_NOT_FOUND"

    def __init__(self, file_id: int):
        super().__init__(f"File {file_id} does not exist", details={"file_id": file_id})
        self.file_id = file_id


class CapacityError(PixrepoError):
    status_code = 507
    default_code = "NO_STORE_AVAILABLE"


class SessionNotFound(PixrepoError):
    status_code = 404
    default_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Upload session {session_id} does not exist or has expired",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class SessionExpired(SessionNotFound):
    default_code = "SESSION_EXPIRED"

    def __init__(self, session_id: str):
        super().__init__(session_id, f"Upload session {session_id} has expired")


class IncompleteError(PixrepoError):
    """Completion was requested before every chunk arrived.

    The session is kept, so the client can resend the missing chunks.
    """

    status_code = 409
    default_code = "UPLOAD_INCOMPLETE"

    def __init__(self, session_id: str, uploaded: int, expected: int, missing: list[int]):
        super().__init__(
            f"Upload incomplete: {uploaded} of {expected} chunks received",
            details={
                "session_id": session_id,
                "uploaded": uploaded,
                "expected": expected,
                "missing": missing,
            },
        )
        self.uploaded = uploaded
        self.expected = expected
        self.missing = missing


class FolderResolutionError(PixrepoError):
    default_code = "FOLDER_RESOLUTION_FAILED"


class RemoteStoreError(PixrepoError):
    status_code = 502
    default_code = "REMOTE_STORE_ERROR"

    def __init__(
        self,
        message: str,
        store: Optional[str] = None,
        path: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(
            message, details={"store": store, "path": path, "status": status}
        )
        self.store = store
        self.path = path
        self.status = status


class RemoteNotFound(RemoteStoreError):
    status_code = 404
    default_code = "REMOTE_NOT_FOUND"


class RemoteConflict(RemoteStoreError):
    status_code = 409
    default_code = "REMOTE_CONFLICT"
