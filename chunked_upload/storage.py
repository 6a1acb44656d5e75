import asyncio
import logging
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Type, TypeVar, Union

import aiofiles
from pydantic import BaseModel, ValidationError

from .config import STALE_THRESHOLD, TEMP_DIR, UPLOAD_DIR, UPLOAD_RULES
from .exceptions import ChunkValidationError, UploadNotFound
from .models import (
    ChunkAck,
    ChunkMetadata,
    CompletedUpload,
    UploadInfo,
    UploadRule,
    UploadStatusInfo,
    UploadType,
)
from .utils import count_chunks, generate_stored_name, guess_mime, matches_accepted_types

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class _UploadLock:
    """Lock for one upload id plus the number of requests holding or waiting on it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class ChunkStore:
    """Receiver side of the chunked upload protocol.

    Chunks live in ``temp_dir`` as ``{upload_id}_chunk_{n}`` next to an
    ``{upload_id}_info.json`` record holding the metadata declared by the
    first accepted chunk. Once every chunk number from 1 to total_chunks is
    present the file is assembled into ``upload_dir/{namespace}`` and a
    ``{upload_id}_done.json`` record replaces the partial state, so a
    resubmitted chunk for a finished upload gets the same answer again.
    """

    def __init__(
        self,
        upload_dir: Union[str, Path] = UPLOAD_DIR,
        temp_dir: Union[str, Path] = TEMP_DIR,
        rules: Optional[Dict[UploadType, UploadRule]] = None,
    ):
        self.upload_dir = Path(upload_dir)
        self.temp_dir = Path(temp_dir)
        self.rules = rules or UPLOAD_RULES
        self._locks: Dict[str, _UploadLock] = {}

    def ensure_dirs(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def _chunk_path(self, upload_id: str, chunk_number: int) -> Path:
        return self.temp_dir / f"{upload_id}_chunk_{chunk_number}"

    def _info_path(self, upload_id: str) -> Path:
        return self.temp_dir / f"{upload_id}_info.json"

    def _done_path(self, upload_id: str) -> Path:
        return self.temp_dir / f"{upload_id}_done.json"

    @asynccontextmanager
    async def _locked(self, upload_id: str) -> AsyncIterator[None]:
        # entries live only while someone holds or waits on them
        entry = self._locks.get(upload_id)
        if entry is None:
            entry = self._locks[upload_id] = _UploadLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[upload_id]

    async def _read_record(self, path: Path, model: Type[M]) -> Optional[M]:
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
        try:
            return model.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring unreadable upload record %s", path)
            return None

    async def _write_record(self, path: Path, record: BaseModel) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(record.model_dump_json())
        os.replace(tmp_path, path)

    def uploaded_chunks(self, upload_id: str) -> List[int]:
        if not self.temp_dir.exists():
            return []
        pattern = re.compile(rf"{re.escape(upload_id)}_chunk_(\d+)")
        chunks = []
        for entry in os.scandir(self.temp_dir):
            match = pattern.fullmatch(entry.name)
            if match:
                chunks.append(int(match.group(1)))
        return sorted(chunks)

    @staticmethod
    def _next_missing(uploaded: List[int], total_chunks: int) -> Optional[int]:
        present = set(uploaded)
        for chunk_number in range(1, total_chunks + 1):
            if chunk_number not in present:
                return chunk_number
        return None

    def _check_limits(self, rule: UploadRule, meta: ChunkMetadata, data: bytes) -> None:
        if len(data) != meta.chunk_size:
            raise ChunkValidationError(
                f"Declared chunk_size {meta.chunk_size} does not match the {len(data)} byte payload"
            )
        if len(data) > rule.max_chunk_size:
            raise ChunkValidationError(
                f"Chunk is too large (max {rule.max_chunk_size} bytes)", status_code=413
            )
        if meta.total_size > rule.max_file_size:
            raise ChunkValidationError(
                f"File is too large (max {rule.max_file_size} bytes)", status_code=413
            )
        if meta.chunk_number > meta.total_chunks:
            raise ChunkValidationError(
                f"chunk_number {meta.chunk_number} exceeds total_chunks {meta.total_chunks}"
            )
        if meta.total_chunks > meta.total_size or meta.chunk_size > meta.total_size:
            raise ChunkValidationError("Chunk layout does not fit the declared total_size")

        content_type = guess_mime(meta.file_name, fallback="")
        if content_type and not matches_accepted_types(meta.file_name, content_type, rule.accepted_types):
            raise ChunkValidationError(
                f"{content_type} is not accepted here ({rule.accepted_types})", status_code=415
            )

    def _check_consistency(self, info: UploadInfo, upload_type: UploadType, meta: ChunkMetadata) -> None:
        if info.upload_type != upload_type:
            raise ChunkValidationError(
                f"Upload {info.upload_id} was started as {info.upload_type.value}, not {upload_type.value}"
            )
        if meta.total_size != info.total_size:
            raise ChunkValidationError(
                f"total_size {meta.total_size} conflicts with {info.total_size} declared earlier"
            )
        if meta.total_chunks != info.total_chunks:
            raise ChunkValidationError(
                f"total_chunks {meta.total_chunks} conflicts with {info.total_chunks} declared earlier"
            )

        is_last = meta.chunk_number == info.total_chunks
        if not is_last:
            if info.chunk_size is None:
                if count_chunks(info.total_size, meta.chunk_size) != info.total_chunks:
                    raise ChunkValidationError(
                        f"chunk_size {meta.chunk_size} cannot produce {info.total_chunks} chunks "
                        f"for {info.total_size} bytes"
                    )
                self._check_last_chunk_on_disk(info, meta.chunk_size)
                info.chunk_size = meta.chunk_size
            elif meta.chunk_size != info.chunk_size:
                raise ChunkValidationError(
                    f"chunk_size {meta.chunk_size} conflicts with {info.chunk_size} declared earlier"
                )
        else:
            expected = self._expected_last_size(info, info.chunk_size)
            if expected is not None and meta.chunk_size != expected:
                raise ChunkValidationError(
                    f"Final chunk must be {expected} bytes, got {meta.chunk_size}"
                )

    @staticmethod
    def _expected_last_size(info: UploadInfo, nominal: Optional[int]) -> Optional[int]:
        if info.total_chunks == 1:
            return info.total_size
        if nominal is None:
            return None
        return info.total_size - nominal * (info.total_chunks - 1)

    def _check_last_chunk_on_disk(self, info: UploadInfo, nominal: int) -> None:
        last_path = self._chunk_path(info.upload_id, info.total_chunks)
        if last_path.exists():
            expected = self._expected_last_size(info, nominal)
            if last_path.stat().st_size != expected:
                raise ChunkValidationError(
                    f"chunk_size {nominal} conflicts with the final chunk already received"
                )

    async def save_chunk(self, upload_type: UploadType, meta: ChunkMetadata, data: bytes) -> ChunkAck:
        rule = self.rules.get(upload_type)
        if rule is None:
            raise ChunkValidationError(f"{upload_type.value} uploads are not accepted", status_code=404)
        upload_id = meta.upload_id or uuid.uuid4().hex
        self._check_limits(rule, meta, data)

        async with self._locked(upload_id):
            done = await self._read_record(self._done_path(upload_id), CompletedUpload)
            if done is not None:
                if meta.total_size != done.file_size:
                    raise ChunkValidationError(
                        f"Upload {upload_id} already completed with {done.file_size} bytes"
                    )
                logger.info("Chunk %s resubmitted for completed upload %s", meta.chunk_number, upload_id)
                return ChunkAck(
                    upload_id=upload_id,
                    chunk_number=meta.chunk_number,
                    completed=True,
                    file_path=done.file_path,
                    file_size=done.file_size,
                )

            now = time.time()
            info = await self._read_record(self._info_path(upload_id), UploadInfo)
            if info is None:
                info = UploadInfo(
                    upload_id=upload_id,
                    upload_type=upload_type,
                    file_name=meta.file_name,
                    total_size=meta.total_size,
                    total_chunks=meta.total_chunks,
                    created_at=now,
                    last_updated=now,
                )
            self._check_consistency(info, upload_type, meta)
            info.last_updated = now

            self.temp_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self._chunk_path(upload_id, meta.chunk_number), "wb") as f:
                await f.write(data)
            await self._write_record(self._info_path(upload_id), info)
            logger.debug(
                "Received chunk %s/%s of %s for upload %s",
                meta.chunk_number, info.total_chunks, info.file_name, upload_id,
            )

            uploaded = self.uploaded_chunks(upload_id)
            next_chunk = self._next_missing(uploaded, info.total_chunks)
            if next_chunk is not None:
                return ChunkAck(upload_id=upload_id, chunk_number=meta.chunk_number, next_chunk=next_chunk)

            completed = await self.assemble_file(info, rule)

        return ChunkAck(
            upload_id=upload_id,
            chunk_number=meta.chunk_number,
            completed=True,
            file_path=completed.file_path,
            file_size=completed.file_size,
        )

    async def assemble_file(self, info: UploadInfo, rule: UploadRule) -> CompletedUpload:
        """Concatenate every chunk into the namespace directory via a temp file and rename."""
        stored_name = generate_stored_name(info.file_name, rule.default_extension)
        dest_dir = self.upload_dir / rule.namespace
        dest_dir.mkdir(parents=True, exist_ok=True)
        final_path = dest_dir / stored_name
        part_path = dest_dir / f".{stored_name}.part"

        written = 0
        try:
            async with aiofiles.open(part_path, "wb") as out:
                for chunk_number in range(1, info.total_chunks + 1):
                    async with aiofiles.open(self._chunk_path(info.upload_id, chunk_number), "rb") as src:
                        data = await src.read()
                    written += len(data)
                    await out.write(data)
            if written != info.total_size:
                raise ChunkValidationError(
                    f"Chunks of upload {info.upload_id} add up to {written} bytes, expected {info.total_size}"
                )
            os.replace(part_path, final_path)
        finally:
            if part_path.exists():
                part_path.unlink()

        completed = CompletedUpload(
            upload_id=info.upload_id,
            file_path=f"{rule.namespace}/{stored_name}",
            file_size=written,
            total_chunks=info.total_chunks,
            completed_at=time.time(),
        )
        await self._write_record(self._done_path(info.upload_id), completed)
        self._remove_partial(info.upload_id)
        logger.info("Assembled upload %s into %s (%s bytes)", info.upload_id, completed.file_path, written)
        return completed

    def _remove_partial(self, upload_id: str) -> int:
        removed = 0
        paths = [self._chunk_path(upload_id, n) for n in self.uploaded_chunks(upload_id)]
        paths.append(self._info_path(upload_id))
        for path in paths:
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                pass
        return removed

    async def cancel_upload(self, upload_id: str) -> int:
        """Drop partial state for upload_id. Unknown or completed ids are a no-op."""
        async with self._locked(upload_id):
            removed = self._remove_partial(upload_id)
        if removed:
            logger.info("Cancelled upload %s, removed %s files", upload_id, removed)
        return removed

    async def get_upload_status(self, upload_id: str) -> UploadStatusInfo:
        done = await self._read_record(self._done_path(upload_id), CompletedUpload)
        if done is not None:
            return UploadStatusInfo(
                upload_id=upload_id,
                uploaded_chunks=list(range(1, done.total_chunks + 1)),
                total_chunks=done.total_chunks,
                completed=True,
                file_path=done.file_path,
            )

        info = await self._read_record(self._info_path(upload_id), UploadInfo)
        if info is None:
            raise UploadNotFound(upload_id)

        uploaded = self.uploaded_chunks(upload_id)
        return UploadStatusInfo(
            upload_id=upload_id,
            uploaded_chunks=uploaded,
            total_chunks=info.total_chunks,
            completed=False,
            next_chunk=self._next_missing(uploaded, info.total_chunks),
        )

    async def cleanup_stale_chunks(self, threshold: timedelta = STALE_THRESHOLD) -> List[str]:
        """Remove partial uploads and completion records untouched for longer than threshold."""
        if not self.temp_dir.exists():
            return []

        cutoff = time.time() - threshold.total_seconds()
        expired = []
        for entry in list(os.scandir(self.temp_dir)):
            if entry.name.endswith("_info.json"):
                info = await self._read_record(Path(entry.path), UploadInfo)
                if info is None or info.last_updated < cutoff:
                    expired.append(entry.name[: -len("_info.json")])
            elif entry.name.endswith("_done.json") and entry.stat().st_mtime < cutoff:
                os.remove(entry.path)

        for upload_id in expired:
            await self.cancel_upload(upload_id)

        # chunks whose info record vanished
        for entry in list(os.scandir(self.temp_dir)):
            if "_chunk_" in entry.name and entry.stat().st_mtime < cutoff:
                try:
                    os.remove(entry.path)
                except FileNotFoundError:
                    pass

        if expired:
            logger.info("Removed %s stale uploads", len(expired))
        return expired
