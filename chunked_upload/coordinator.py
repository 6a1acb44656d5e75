import asyncio
import functools
import logging
from pathlib import Path
from typing import AsyncIterator, Optional, Set, Union

from .exceptions import (
    EmptyFile,
    FileTooLarge,
    TransmissionCause,
    TransmissionError,
    UnreadableFile,
    UnsupportedFileType,
    UploadCancelled,
    UploadError,
)
from .models import (
    TERMINAL_STATES,
    Chunk,
    ChunkMetadata,
    SessionState,
    SourceFile,
    UploadConstraints,
    UploadProgress,
    UploadResult,
    UploadSession,
    UploadType,
)
from .transport import ChunkTransport
from .utils import count_chunks, final_segment, generate_upload_id, guess_mime, matches_accepted_types, plan_chunks, read_chunk

logger = logging.getLogger(__name__)


class UploadHandle:
    """A running upload: cancel it, follow its progress, or await its result.

    ``events()`` yields a snapshot when the upload starts, after every
    acknowledged chunk, and once more on reaching a terminal state. It is
    meant for a single consumer.
    """

    def __init__(self, session: UploadSession):
        self.session = session
        self.result: Optional[UploadResult] = None
        self._events: "asyncio.Queue[UploadProgress]" = asyncio.Queue()
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def status(self) -> SessionState:
        return self.session.status

    @property
    def progress(self) -> int:
        return self.session.progress

    def publish(self) -> None:
        self._events.put_nowait(self.session.snapshot())

    def cancel(self) -> bool:
        """Abort the in-flight chunk. Returns False if the upload already ended."""
        if self.session.is_terminal or self._task is None or self._task.done():
            return False
        self._task.cancel()
        return True

    async def events(self) -> AsyncIterator[UploadProgress]:
        while True:
            event = await self._events.get()
            yield event
            if event.status in TERMINAL_STATES:
                return

    async def wait(self) -> UploadResult:
        await asyncio.wait({self._task})
        return self.result

    def __await__(self):
        return self.wait().__await__()


class UploadCoordinator:
    """Drives files through the chunked upload protocol for one upload type.

    Chunks go out strictly in file order with one request in flight; the
    next chunk is only read once the previous one is acknowledged. Nothing
    is retried: a failed session ends in ``error`` and a new session is
    needed to try again.
    """

    def __init__(self, transport: ChunkTransport, upload_type: UploadType = UploadType.VIDEO):
        self.transport = transport
        self.upload_type = upload_type
        self._cleanup_tasks: Set[asyncio.Task] = set()

    async def __aenter__(self) -> "UploadCoordinator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Wait for pending cancel notifications, then close the transport."""
        if self._cleanup_tasks:
            await asyncio.wait(set(self._cleanup_tasks))
        await self.transport.aclose()

    def select_file(
        self,
        path: Union[str, Path],
        constraints: UploadConstraints,
        content_type: Optional[str] = None,
    ) -> UploadSession:
        path = Path(path)
        try:
            if not path.is_file():
                raise UnreadableFile(str(path), "not a regular file")
            size = path.stat().st_size
        except OSError as e:
            raise UnreadableFile(str(path), e.strerror or str(e))
        content_type = content_type or guess_mime(path)

        if size > constraints.max_file_size:
            raise FileTooLarge(size, constraints.max_file_size)
        if size == 0:
            raise EmptyFile(path.name)
        if not matches_accepted_types(path.name, content_type, constraints.accepted_types):
            raise UnsupportedFileType(path.name, content_type, constraints.accepted_types)

        session = UploadSession(
            upload_id=generate_upload_id(),
            upload_type=self.upload_type,
            file=SourceFile(path=path, name=path.name, size=size, content_type=content_type),
            chunk_size=constraints.chunk_size,
        )
        session.total_chunks = count_chunks(size, constraints.chunk_size)
        session.transition(SessionState.READY)
        return session

    def start_upload(self, session: UploadSession) -> UploadHandle:
        session.transition(SessionState.UPLOADING)
        handle = UploadHandle(session)
        handle.publish()

        handle._task = asyncio.create_task(self._run(handle), name=f"upload-{session.upload_id}")
        handle._task.add_done_callback(functools.partial(self._on_task_done, handle))
        logger.info(
            "Uploading %s (%s bytes) as %s in %s chunks",
            session.file_name, session.total_size, session.upload_id, session.total_chunks,
        )
        return handle

    async def upload(self, path: Union[str, Path], constraints: UploadConstraints) -> UploadResult:
        return await self.start_upload(self.select_file(path, constraints))

    def _metadata(self, session: UploadSession, chunk: Chunk) -> ChunkMetadata:
        return ChunkMetadata(
            chunk_number=chunk.chunk_number,
            total_chunks=session.total_chunks,
            chunk_size=chunk.size,
            total_size=session.total_size,
            file_name=session.file_name,
            upload_id=session.upload_id,
        )

    async def _run(self, handle: UploadHandle) -> None:
        session = handle.session
        try:
            for chunk in plan_chunks(session.total_size, session.chunk_size):
                payload = await read_chunk(session.file.path, chunk)
                ack = await self.transport.send_chunk(session.upload_type, self._metadata(session, chunk), payload)

                if ack.completed:
                    session.uploaded_chunks = session.total_chunks
                    session.file_path = ack.file_path
                    self._finish(handle, SessionState.COMPLETED)
                    return
                if chunk.is_last:
                    raise TransmissionError(
                        "Receiver acknowledged the final chunk without assembling the file",
                        TransmissionCause.SERVER_REJECTED,
                        chunk.chunk_number,
                    )

                session.uploaded_chunks = chunk.chunk_number
                handle.publish()
        except asyncio.CancelledError:
            self._finish(handle, SessionState.CANCELLED, UploadCancelled(session.upload_id))
        except TransmissionError as e:
            self._finish(handle, SessionState.ERROR, e)
        except OSError as e:
            self._finish(handle, SessionState.ERROR, UploadError(f"Could not read {session.file_name}: {e}"))

    def _on_task_done(self, handle: UploadHandle, task: asyncio.Task) -> None:
        # a task cancelled before its first step never enters _run
        if task.cancelled():
            self._finish(handle, SessionState.CANCELLED, UploadCancelled(handle.session.upload_id))
        elif task.exception() is not None:
            exc = task.exception()
            logger.error("Upload %s crashed", handle.session.upload_id, exc_info=exc)
            self._finish(handle, SessionState.ERROR, UploadError(f"Unexpected failure: {exc}"))

    def _finish(self, handle: UploadHandle, state: SessionState, error: Optional[UploadError] = None) -> None:
        session = handle.session
        if session.is_terminal:
            return

        session.transition(state)
        session.error_reason = str(error) if error and state == SessionState.ERROR else None
        handle.result = UploadResult(
            upload_id=session.upload_id,
            status=state,
            file_path=session.file_path,
            file_name=final_segment(session.file_path) if session.file_path else None,
            reason=str(error) if error else None,
            cause=error.cause if isinstance(error, TransmissionError) else None,
            error=error,
        )
        handle.publish()

        if state == SessionState.COMPLETED:
            logger.info("Upload %s completed as %s", session.upload_id, session.file_path)
        elif state == SessionState.ERROR:
            logger.warning("Upload %s failed: %s", session.upload_id, error)
        else:
            logger.info("Upload %s cancelled after %s chunks", session.upload_id, session.uploaded_chunks)
            task = asyncio.create_task(self.transport.cancel(session.upload_id))
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)
