import mimetypes
import os
import secrets
import time
import uuid
from pathlib import Path
from typing import List, Optional, Union

import aiofiles

from .models import Chunk


def generate_upload_id() -> str:
    """Millisecond timestamp plus a random suffix; unique enough to correlate one transfer."""
    return f"{int(time.time() * 1000)}{secrets.token_hex(5)}"


def generate_stored_name(file_name: str, default_extension: str) -> str:
    return f"{uuid.uuid4().hex}.{file_extension(file_name) or default_extension}"


def file_extension(file_name: str) -> Optional[str]:
    ext = os.path.splitext(file_name)[1].lstrip(".")
    return ext.lower() or None


def final_segment(file_path: str) -> str:
    return file_path.rstrip("/").rsplit("/", 1)[-1]


def guess_mime(path: Union[str, Path], fallback: str = "application/octet-stream") -> str:
    m, _ = mimetypes.guess_type(str(path))
    return m or fallback


def count_chunks(total_size: int, chunk_size: int) -> int:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return -(-total_size // chunk_size)


def plan_chunks(total_size: int, chunk_size: int) -> List[Chunk]:
    """Split [0, total_size) into contiguous chunks of at most chunk_size bytes."""
    total_chunks = count_chunks(total_size, chunk_size)
    return [
        Chunk(
            index=index,
            start=index * chunk_size,
            end=min((index + 1) * chunk_size, total_size),
            is_last=index == total_chunks - 1,
        )
        for index in range(total_chunks)
    ]


async def read_chunk(path: Union[str, Path], chunk: Chunk) -> bytes:
    async with aiofiles.open(path, "rb") as f:
        await f.seek(chunk.start)
        data = await f.read(chunk.size)
    if len(data) != chunk.size:
        raise IOError(f"{path} changed while uploading: expected {chunk.size} bytes at {chunk.start}")
    return data


def matches_accepted_types(file_name: str, content_type: str, accepted_types: str) -> bool:
    """Match a file against an HTML accept-style pattern ("video/*,.mkv,image/png")."""
    patterns = [p.strip().lower() for p in accepted_types.split(",") if p.strip()]
    if not patterns:
        return True

    content_type = content_type.lower()
    name = file_name.lower()
    for pattern in patterns:
        if pattern in ("*", "*/*"):
            return True
        if pattern.startswith("."):
            if name.endswith(pattern):
                return True
        elif pattern.endswith("/*"):
            if content_type.startswith(pattern[:-1]):
                return True
        elif content_type == pattern:
            return True
    return False
