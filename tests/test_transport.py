"""Tests for ChunkTransport request shape and failure classification."""

import json

import httpx
import pytest

from chunked_upload.exceptions import TransmissionCause, TransmissionError
from chunked_upload.models import ChunkMetadata, UploadType
from chunked_upload.transport import ChunkTransport

METADATA = ChunkMetadata(
    chunk_number=2, total_chunks=3, chunk_size=4, total_size=10, file_name="pic.jpg", upload_id="abc123",
)


def transport_for(handler) -> ChunkTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return ChunkTransport(client=client)


@pytest.mark.asyncio
async def test_posts_chunk_and_metadata():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json={
            "success": True,
            "data": {"upload_id": "abc123", "chunk_number": 2, "completed": False, "next_chunk": 3},
        })

    ack = await transport_for(handler).send_chunk(UploadType.THUMBNAIL, METADATA, b"\x00\x01\x02\x03")

    assert ack.chunk_number == 2
    assert ack.next_chunk == 3
    assert not ack.completed

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/upload/thumbnail/chunk"
    assert request.headers["content-type"].startswith("multipart/form-data")
    assert b'name="chunk"' in request.content
    assert b'name="metadata"' in request.content
    assert b'"chunk_number":2' in request.content
    assert b'"upload_id":"abc123"' in request.content
    assert b"\x00\x01\x02\x03" in request.content


@pytest.mark.asyncio
async def test_completion_ack_carries_file_path():
    def handler(request):
        return httpx.Response(200, json={
            "success": True,
            "data": {"upload_id": "abc123", "chunk_number": 3, "completed": True, "file_path": "thumbnails/x.jpg"},
        })

    ack = await transport_for(handler).send_chunk(UploadType.THUMBNAIL, METADATA, b"abcd")
    assert ack.completed
    assert ack.file_path == "thumbnails/x.jpg"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,cause",
    [
        (httpx.Response(413, json={"success": False, "message": "File is too large"}), TransmissionCause.SIZE_LIMIT),
        (httpx.Response(400, json={"success": False, "message": "total_size conflicts"}), TransmissionCause.SERVER_REJECTED),
        (httpx.Response(500, text="Internal Server Error"), TransmissionCause.SERVER_REJECTED),
        (httpx.Response(200, json={"success": False, "message": "nope"}), TransmissionCause.SERVER_REJECTED),
        (httpx.Response(200, text="<html>"), TransmissionCause.SERVER_REJECTED),
    ],
)
async def test_failure_classification(response, cause):
    transport = transport_for(lambda request: response)

    with pytest.raises(TransmissionError) as exc_info:
        await transport.send_chunk(UploadType.THUMBNAIL, METADATA, b"abcd")

    assert exc_info.value.cause == cause
    assert exc_info.value.chunk_number == 2


@pytest.mark.asyncio
async def test_server_message_is_kept_in_reason():
    transport = transport_for(lambda request: httpx.Response(400, json={"success": False, "message": "total_size conflicts"}))

    with pytest.raises(TransmissionError) as exc_info:
        await transport.send_chunk(UploadType.VIDEO, METADATA, b"abcd")

    assert "total_size conflicts" in exc_info.value.reason


@pytest.mark.asyncio
async def test_connection_failure_is_a_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransmissionError) as exc_info:
        await transport_for(handler).send_chunk(UploadType.VIDEO, METADATA, b"abcd")

    assert exc_info.value.cause == TransmissionCause.NETWORK


@pytest.mark.asyncio
async def test_cancel_sends_upload_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    assert await transport_for(handler).cancel("abc123")
    assert seen[0].method == "DELETE"
    assert seen[0].url.path == "/upload/cancel"
    assert json.loads(seen[0].content) == {"upload_id": "abc123"}


@pytest.mark.asyncio
async def test_cancel_never_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert await transport_for(handler).cancel("abc123") is False


@pytest.mark.asyncio
async def test_token_is_sent_as_bearer():
    transport = ChunkTransport("http://test", token="secret")
    assert transport._client.headers["Authorization"] == "Bearer secret"
    await transport.aclose()
