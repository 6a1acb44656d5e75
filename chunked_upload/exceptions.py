from enum import Enum
from typing import Optional


class UploadError(Exception):
    """Base class for all chunked upload errors."""


class FileValidationError(UploadError):
    """A selected file failed local validation; no session was created."""


class FileTooLarge(FileValidationError):
    def __init__(self, size: int, max_file_size: int):
        self.size = size
        self.max_file_size = max_file_size
        super().__init__(
            f"File is {size} bytes, larger than the {max_file_size} byte limit"
        )


class EmptyFile(FileValidationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"File {name!r} is empty")


class UnreadableFile(FileValidationError):
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read {path!r}: {reason}")


class UnsupportedFileType(FileValidationError):
    def __init__(self, name: str, content_type: str, accepted_types: str):
        self.name = name
        self.content_type = content_type
        self.accepted_types = accepted_types
        super().__init__(
            f"File {name!r} ({content_type}) does not match {accepted_types!r}"
        )


class TransmissionCause(str, Enum):
    NETWORK = "network"
    SIZE_LIMIT = "size_limit"
    SERVER_REJECTED = "server_rejected"


class TransmissionError(UploadError):
    """A chunk request failed for a reason other than cancellation."""

    def __init__(
        self,
        reason: str,
        cause: TransmissionCause = TransmissionCause.SERVER_REJECTED,
        chunk_number: Optional[int] = None,
    ):
        self.reason = reason
        self.cause = cause
        self.chunk_number = chunk_number
        super().__init__(reason)


class UploadCancelled(UploadError):
    def __init__(self, upload_id: str):
        self.upload_id = upload_id
        super().__init__(f"Upload {upload_id} was cancelled")


class InvalidStateTransition(UploadError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move upload session from {current} to {target}")


class ChunkValidationError(UploadError):
    """Receiver-side rejection of a chunk. Carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class UploadNotFound(UploadError):
    def __init__(self, upload_id: str):
        self.upload_id = upload_id
        super().__init__(f"Upload {upload_id} not found")
