import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .exceptions import TransmissionCause, TransmissionError
from .models import ApiResponse, ChunkAck, ChunkMetadata, UploadType

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ChunkTransport:
    """HTTP client for the chunk receiver endpoints.

    Failures are mapped onto TransmissionError with a cause: connection
    problems and timeouts are NETWORK, HTTP 413 is SIZE_LIMIT, any other
    refusal (error status, ``success: false``, unreadable body) is
    SERVER_REJECTED.
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_client = client is None
        if client is None:
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=httpx.Timeout(timeout))
        self._client = client

    async def __aenter__(self) -> "ChunkTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send_chunk(self, upload_type: UploadType, metadata: ChunkMetadata, payload: bytes) -> ChunkAck:
        chunk_number = metadata.chunk_number
        try:
            response = await self._client.post(
                f"/upload/{upload_type.value}/chunk",
                files={"chunk": (metadata.file_name, payload, "application/octet-stream")},
                data={"metadata": metadata.model_dump_json()},
            )
        except httpx.HTTPError as e:
            raise TransmissionError(
                f"Chunk {chunk_number} upload failed: {e.__class__.__name__}: {e}",
                TransmissionCause.NETWORK,
                chunk_number,
            )
        return self._parse_ack(response, chunk_number)

    def _parse_ack(self, response: httpx.Response, chunk_number: int) -> ChunkAck:
        if not response.is_success:
            cause = (
                TransmissionCause.SIZE_LIMIT
                if response.status_code == 413
                else TransmissionCause.SERVER_REJECTED
            )
            detail = _error_message(response) or response.reason_phrase
            raise TransmissionError(
                f"Chunk {chunk_number} upload failed ({response.status_code}): {detail}",
                cause,
                chunk_number,
            )

        try:
            body = ApiResponse[ChunkAck].model_validate_json(response.content)
        except ValidationError:
            raise TransmissionError(
                f"Chunk {chunk_number} got an unreadable acknowledgment",
                TransmissionCause.SERVER_REJECTED,
                chunk_number,
            )
        if not body.success or body.data is None:
            raise TransmissionError(
                f"Chunk {chunk_number} was rejected: {body.message or 'no reason given'}",
                TransmissionCause.SERVER_REJECTED,
                chunk_number,
            )
        return body.data

    async def cancel(self, upload_id: str) -> bool:
        """Ask the receiver to drop partial state. Best effort: never raises on transport errors."""
        try:
            response = await self._client.request("DELETE", "/upload/cancel", json={"upload_id": upload_id})
        except httpx.HTTPError as e:
            logger.warning("Error cancelling upload %s: %s", upload_id, e)
            return False
        if not response.is_success:
            logger.warning("Cancel of upload %s answered %s", upload_id, response.status_code)
            return False
        return True


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail")
        return str(message) if message else None
    return None
