from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import InvalidStateTransition, TransmissionCause, UploadError

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1 MiB

UPLOAD_ID_PATTERN = r"^[A-Za-z0-9_-]{1,128}$"

T = TypeVar("T")


class UploadType(str, Enum):
    VIDEO = "video"
    THUMBNAIL = "thumbnail"
    CHANNEL_IMAGE = "channel-image"


class UploadRule(BaseModel):
    namespace: str
    max_file_size: int
    max_chunk_size: int
    accepted_types: str
    default_extension: str


# Wire models

class ChunkMetadata(BaseModel):
    """JSON sidecar sent with every chunk."""
    chunk_number: int = Field(ge=1)
    total_chunks: int = Field(ge=1)
    chunk_size: int = Field(ge=1)
    total_size: int = Field(ge=1)
    file_name: str
    upload_id: Optional[str] = Field(None, pattern=UPLOAD_ID_PATTERN)


class ChunkAck(BaseModel):
    upload_id: str
    chunk_number: int
    uploaded: bool = True
    next_chunk: Optional[int] = None
    completed: bool = False
    file_path: Optional[str] = None
    file_size: Optional[int] = None


class ApiResponse(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: T, message: Optional[str] = None) -> "ApiResponse[T]":
        return cls(success=True, data=data, message=message)

    @classmethod
    def error(cls, message: str) -> "ApiResponse[T]":
        return cls(success=False, message=message)


class CancelRequest(BaseModel):
    upload_id: str = Field(pattern=UPLOAD_ID_PATTERN)


class CancelResult(BaseModel):
    upload_id: str
    removed: int


class UploadStatusInfo(BaseModel):
    upload_id: str
    uploaded_chunks: List[int]
    total_chunks: int
    completed: bool
    next_chunk: Optional[int] = None
    file_path: Optional[str] = None


# Receiver records, persisted next to the chunks

class UploadInfo(BaseModel):
    upload_id: str
    upload_type: UploadType
    file_name: str
    total_size: int
    total_chunks: int
    chunk_size: Optional[int] = None  # nominal size, known once a non-final chunk arrives
    created_at: float
    last_updated: float


class CompletedUpload(BaseModel):
    upload_id: str
    file_path: str
    file_size: int
    total_chunks: int
    completed_at: float


# Coordinator models

class SessionState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES: FrozenSet[SessionState] = frozenset(
    {SessionState.COMPLETED, SessionState.ERROR, SessionState.CANCELLED}
)

_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.READY}),
    SessionState.READY: frozenset({SessionState.UPLOADING}),
    SessionState.UPLOADING: TERMINAL_STATES,
    SessionState.COMPLETED: frozenset(),
    SessionState.ERROR: frozenset(),
    SessionState.CANCELLED: frozenset(),
}


class UploadConstraints(BaseModel):
    max_file_size: int = Field(gt=0)
    accepted_types: str = ""
    chunk_size: int = Field(DEFAULT_CHUNK_SIZE, gt=0)


class SourceFile(BaseModel):
    path: Path
    name: str
    size: int
    content_type: str


class Chunk(BaseModel):
    index: int
    start: int
    end: int
    is_last: bool

    @property
    def chunk_number(self) -> int:
        return self.index + 1

    @property
    def size(self) -> int:
        return self.end - self.start


class UploadProgress(BaseModel):
    upload_id: str
    uploaded_chunks: int
    total_chunks: int
    progress: int
    status: SessionState


class UploadSession(BaseModel):
    """One file transfer. Mutated only by the coordinator driving it."""
    upload_id: str
    upload_type: UploadType
    file: SourceFile
    chunk_size: int
    total_chunks: int = 0
    uploaded_chunks: int = 0
    status: SessionState = SessionState.IDLE
    file_path: Optional[str] = None
    error_reason: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.file.name

    @property
    def total_size(self) -> int:
        return self.file.size

    @property
    def progress(self) -> int:
        if not self.total_chunks:
            return 0
        # rounds half up; 100 is reserved for a fully acknowledged upload
        rounded = (200 * self.uploaded_chunks + self.total_chunks) // (2 * self.total_chunks)
        if self.uploaded_chunks < self.total_chunks:
            return min(rounded, 99)
        return rounded

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidStateTransition(self.status.value, target.value)
        self.status = target

    def snapshot(self) -> UploadProgress:
        return UploadProgress(
            upload_id=self.upload_id,
            uploaded_chunks=self.uploaded_chunks,
            total_chunks=self.total_chunks,
            progress=self.progress,
            status=self.status,
        )


class UploadResult(BaseModel):
    """Terminal outcome of a session."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    upload_id: str
    status: SessionState
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    reason: Optional[str] = None
    cause: Optional[TransmissionCause] = None
    error: Optional[UploadError] = None

    @property
    def ok(self) -> bool:
        return self.status == SessionState.COMPLETED

    def raise_for_status(self) -> "UploadResult":
        if self.error is not None:
            raise self.error
        return self
