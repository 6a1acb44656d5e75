import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import __version__
from .background import cleanup_lifespan
from .config import CORS_ORIGINS
from .exceptions import ChunkValidationError, UploadNotFound
from .models import (
    UPLOAD_ID_PATTERN,
    ApiResponse,
    CancelRequest,
    CancelResult,
    ChunkAck,
    ChunkMetadata,
    UploadStatusInfo,
    UploadType,
)
from .storage import ChunkStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["upload"])


def get_store(request: Request) -> ChunkStore:
    return request.app.state.store


@router.post("/{upload_type}/chunk", response_model=ApiResponse[ChunkAck])
async def upload_chunk(
    upload_type: UploadType,
    chunk: UploadFile = File(...),
    metadata: str = Form(...),
    store: ChunkStore = Depends(get_store),
):
    try:
        meta = ChunkMetadata.model_validate_json(metadata)
    except ValidationError as e:
        raise ChunkValidationError(f"Invalid chunk metadata: {e.error_count()} errors")

    data = await chunk.read()
    await chunk.close()

    ack = await store.save_chunk(upload_type, meta, data)
    return ApiResponse.ok(ack)


@router.delete("/cancel", response_model=ApiResponse[CancelResult])
async def cancel_upload(body: CancelRequest, store: ChunkStore = Depends(get_store)):
    removed = await store.cancel_upload(body.upload_id)
    message = "Upload cancelled" if removed else "No partial upload to cancel"
    return ApiResponse.ok(CancelResult(upload_id=body.upload_id, removed=removed), message=message)


@router.get("/status", response_model=ApiResponse[UploadStatusInfo])
async def get_upload_status(
    upload_id: str = Query(..., pattern=UPLOAD_ID_PATTERN),
    store: ChunkStore = Depends(get_store),
):
    return ApiResponse.ok(await store.get_upload_status(upload_id))


@router.post("/cleanup", response_model=ApiResponse[None])
async def trigger_cleanup(background_tasks: BackgroundTasks, store: ChunkStore = Depends(get_store)):
    background_tasks.add_task(store.cleanup_stale_chunks)
    return ApiResponse(success=True, message="Cleanup process started")


async def chunk_rejected(request: Request, exc: ChunkValidationError):
    logger.warning("Rejected chunk on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse.error(exc.message).model_dump(),
    )


async def upload_not_found(request: Request, exc: UploadNotFound):
    return JSONResponse(status_code=404, content=ApiResponse.error(str(exc)).model_dump())


async def request_invalid(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    logger.warning("Invalid request on %s: %s", request.url.path, problems)
    return JSONResponse(
        status_code=422,
        content=ApiResponse.error(f"Invalid request: {problems}").model_dump(),
    )


def create_app(store: Optional[ChunkStore] = None) -> FastAPI:
    app = FastAPI(title="Chunked Upload API", version=__version__, lifespan=cleanup_lifespan)
    app.state.store = store or ChunkStore()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ChunkValidationError, chunk_rejected)
    app.add_exception_handler(UploadNotFound, upload_not_found)
    app.add_exception_handler(RequestValidationError, request_invalid)
    app.include_router(router)

    return app


app = create_app()
