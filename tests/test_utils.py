"""Tests for chunk planning and helper functions."""

import re

import pytest

from chunked_upload.models import UPLOAD_ID_PATTERN, SessionState, SourceFile, UploadSession, UploadType
from chunked_upload.exceptions import InvalidStateTransition
from chunked_upload.utils import (
    count_chunks,
    file_extension,
    final_segment,
    generate_stored_name,
    generate_upload_id,
    matches_accepted_types,
    plan_chunks,
    read_chunk,
)
from conftest import sample_bytes


@pytest.mark.parametrize(
    "total_size,chunk_size",
    [(1, 1), (10, 3), (10 * 1024, 1024), (10 * 1024 + 1, 1024), (1023, 1024), (5_000_000, 1_048_576)],
)
def test_plan_covers_file_exactly_once(total_size, chunk_size):
    chunks = plan_chunks(total_size, chunk_size)
    n = -(-total_size // chunk_size)

    assert len(chunks) == n
    assert [c.index for c in chunks] == list(range(n))
    assert all(c.size == chunk_size for c in chunks[:-1])
    assert chunks[-1].size == total_size - chunk_size * (n - 1)
    assert chunks[0].start == 0 and chunks[-1].end == total_size
    assert all(a.end == b.start for a, b in zip(chunks, chunks[1:]))
    assert [c.is_last for c in chunks] == [False] * (n - 1) + [True]


def test_chunk_numbers_are_one_based():
    chunks = plan_chunks(2500, 1000)
    assert [c.chunk_number for c in chunks] == [1, 2, 3]


def test_count_chunks():
    assert count_chunks(10 * 1024 * 1024, 1024 * 1024) == 10
    assert count_chunks(1, 1024) == 1
    assert count_chunks(0, 1024) == 0
    with pytest.raises(ValueError):
        count_chunks(100, 0)


@pytest.mark.asyncio
async def test_read_chunks_reassemble_source(tmp_path):
    data = sample_bytes(10_000)
    path = tmp_path / "source.bin"
    path.write_bytes(data)

    parts = [await read_chunk(path, chunk) for chunk in plan_chunks(len(data), 1024)]

    assert b"".join(parts) == data


@pytest.mark.asyncio
async def test_read_chunk_detects_truncated_file(tmp_path):
    path = tmp_path / "source.bin"
    path.write_bytes(sample_bytes(2048))
    chunks = plan_chunks(2048, 1024)
    path.write_bytes(sample_bytes(1500))

    with pytest.raises(IOError):
        await read_chunk(path, chunks[1])


def test_upload_ids_are_unique_and_path_safe():
    ids = {generate_upload_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(re.match(UPLOAD_ID_PATTERN, i) for i in ids)


def test_stored_name_keeps_extension_or_uses_default():
    assert generate_stored_name("Holiday.MOV", "mp4").endswith(".mov")
    assert generate_stored_name("noext", "jpg").endswith(".jpg")
    assert file_extension("archive.tar.gz") == "gz"
    assert file_extension("README") is None


def test_final_segment():
    assert final_segment("channels/abc.jpg") == "abc.jpg"
    assert final_segment("abc.jpg") == "abc.jpg"


@pytest.mark.parametrize(
    "name,content_type,accepted,expected",
    [
        ("a.mp4", "video/mp4", "video/*", True),
        ("a.png", "image/png", "video/*", False),
        ("a.png", "image/png", "image/jpeg, image/png", True),
        ("a.mkv", "application/octet-stream", "video/*,.mkv", True),
        ("a.txt", "text/plain", "", True),
        ("a.txt", "text/plain", "*/*", True),
        ("A.JPG", "image/jpeg", ".jpg", True),
    ],
)
def test_matches_accepted_types(name, content_type, accepted, expected):
    assert matches_accepted_types(name, content_type, accepted) is expected


def _session(total_chunks: int, uploaded: int) -> UploadSession:
    return UploadSession(
        upload_id="abc",
        upload_type=UploadType.VIDEO,
        file=SourceFile(path="clip.mp4", name="clip.mp4", size=total_chunks, content_type="video/mp4"),
        chunk_size=1,
        total_chunks=total_chunks,
        uploaded_chunks=uploaded,
    )


def test_progress_rounds_half_up():
    assert _session(8, 1).progress == 13
    assert _session(3, 1).progress == 33
    assert _session(3, 2).progress == 67
    assert _session(10, 10).progress == 100


def test_progress_reaches_100_only_when_every_chunk_is_acknowledged():
    assert _session(200, 199).progress == 99
    assert _session(1000, 999).progress == 99
    assert _session(200, 200).progress == 100


def test_terminal_states_have_no_exits():
    session = _session(1, 0)
    session.transition(SessionState.READY)
    session.transition(SessionState.UPLOADING)
    session.transition(SessionState.ERROR)

    for target in SessionState:
        with pytest.raises(InvalidStateTransition):
            session.transition(target)
