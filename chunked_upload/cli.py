import argparse
import asyncio
import logging
import sys

from .config import UPLOAD_RULES, configure_logging
from .exceptions import FileValidationError
from .models import DEFAULT_CHUNK_SIZE, SessionState, UploadConstraints, UploadType
from .coordinator import UploadCoordinator
from .transport import DEFAULT_TIMEOUT, ChunkTransport

logger = logging.getLogger(__name__)


async def upload_file(args: argparse.Namespace) -> int:
    upload_type = UploadType(args.type)
    rule = UPLOAD_RULES[upload_type]
    constraints = UploadConstraints(
        max_file_size=args.max_size or rule.max_file_size,
        accepted_types=rule.accepted_types if args.accept is None else args.accept,
        chunk_size=args.chunk_size,
    )

    transport = ChunkTransport(args.url, token=args.token, timeout=args.timeout)
    async with UploadCoordinator(transport, upload_type) as coordinator:
        try:
            session = coordinator.select_file(args.file, constraints)
        except FileValidationError as e:
            print(f"[error] {e}", file=sys.stderr)
            return 2

        handle = coordinator.start_upload(session)
        try:
            async for event in handle.events():
                print(f"[{event.status.value}] {event.uploaded_chunks}/{event.total_chunks} chunks {event.progress}%")
        except asyncio.CancelledError:
            handle.cancel()
        result = await handle

    if result.status == SessionState.COMPLETED:
        print(result.file_name or result.file_path or "")
        return 0
    if result.status == SessionState.CANCELLED:
        print("[cancelled]", file=sys.stderr)
        return 130
    print(f"[error] {result.reason}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Upload a file to a chunk receiver")
    ap.add_argument("file")
    ap.add_argument("--url", default="http://127.0.0.1:8000")
    ap.add_argument("--type", choices=[t.value for t in UploadType], default=UploadType.VIDEO.value)
    ap.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    ap.add_argument("--max-size", type=int, default=None, help="defaults to the upload type's limit")
    ap.add_argument("--accept", default=None, help="accept-style pattern, e.g. 'video/*,.mkv'")
    ap.add_argument("--token", default=None, help="bearer token sent with every request")
    ap.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT)
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(upload_file(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
