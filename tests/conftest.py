"""Pytest configuration and fixtures for chunked_upload tests."""

import asyncio
from typing import List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from chunked_upload.exceptions import TransmissionCause, TransmissionError
from chunked_upload.main import create_app
from chunked_upload.models import ChunkAck, ChunkMetadata, UploadType
from chunked_upload.storage import ChunkStore


def sample_bytes(size: int) -> bytes:
    """Deterministic, non-repeating-per-chunk content."""
    return bytes((i * 7 + i // 251) % 256 for i in range(size))


class FakeTransport:
    """Scripted stand-in for ChunkTransport used by coordinator tests."""

    def __init__(
        self,
        fail_on: Optional[int] = None,
        fail_cause: TransmissionCause = TransmissionCause.NETWORK,
        block_on: Optional[int] = None,
        never_complete: bool = False,
    ):
        self.fail_on = fail_on
        self.fail_cause = fail_cause
        self.block_on = block_on
        self.never_complete = never_complete
        self.sent: List[Tuple[UploadType, ChunkMetadata, bytes]] = []
        self.cancelled: List[str] = []
        self.closed = False

    @property
    def sent_numbers(self) -> List[int]:
        return [meta.chunk_number for _, meta, _ in self.sent]

    @property
    def payload(self) -> bytes:
        return b"".join(data for _, _, data in self.sent)

    async def send_chunk(self, upload_type, metadata, payload):
        self.sent.append((upload_type, metadata, payload))
        n = metadata.chunk_number
        if n == self.fail_on:
            raise TransmissionError(f"Chunk {n} upload failed", self.fail_cause, n)
        if n == self.block_on:
            await asyncio.Event().wait()

        completed = n == metadata.total_chunks and not self.never_complete
        return ChunkAck(
            upload_id=metadata.upload_id,
            chunk_number=n,
            completed=completed,
            next_chunk=None if completed else n + 1,
            file_path=f"videos/{metadata.upload_id}.mp4" if completed else None,
            file_size=metadata.total_size if completed else None,
        )

    async def cancel(self, upload_id):
        self.cancelled.append(upload_id)
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def make_file(tmp_path):
    """Write a sample file of the given size and return its path."""
    def _make(size: int, name: str = "clip.mp4"):
        path = tmp_path / name
        path.write_bytes(sample_bytes(size))
        return path
    return _make


@pytest.fixture
def store(tmp_path):
    return ChunkStore(upload_dir=tmp_path / "uploads", temp_dir=tmp_path / "uploads" / "temp")


@pytest.fixture
def app(store):
    return create_app(store)


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
