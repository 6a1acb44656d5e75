import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Dict

from .models import UploadRule, UploadType

MB = 1024 * 1024

# Configuration
UPLOAD_DIR = Path(os.getenv("CHUNKED_UPLOAD_DIR", "uploads"))
TEMP_DIR = Path(os.getenv("CHUNKED_UPLOAD_TEMP_DIR", str(UPLOAD_DIR / "temp")))
STALE_THRESHOLD = timedelta(hours=float(os.getenv("CHUNKED_UPLOAD_STALE_HOURS", "24")))
CLEANUP_INTERVAL = float(os.getenv("CHUNKED_UPLOAD_CLEANUP_SECONDS", "3600"))

VIDEO_MAX_FILE_SIZE = int(os.getenv("CHUNKED_UPLOAD_VIDEO_MAX_BYTES", str(500 * MB)))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CHUNKED_UPLOAD_CORS_ORIGINS", "http://localhost:3000,http://localhost:4321").split(",")
    if origin.strip()
]

UPLOAD_RULES: Dict[UploadType, UploadRule] = {
    UploadType.VIDEO: UploadRule(
        namespace="videos",
        max_file_size=VIDEO_MAX_FILE_SIZE,
        max_chunk_size=10 * MB,
        accepted_types="video/*",
        default_extension="mp4",
    ),
    UploadType.THUMBNAIL: UploadRule(
        namespace="thumbnails",
        max_file_size=5 * MB,
        max_chunk_size=2 * MB,
        accepted_types="image/*",
        default_extension="jpg",
    ),
    UploadType.CHANNEL_IMAGE: UploadRule(
        namespace="channels",
        max_file_size=2 * MB,
        max_chunk_size=1 * MB,
        accepted_types="image/*",
        default_extension="jpg",
    ),
}

LOG_FORMATS = {
    "simple": "%(asctime)s - %(levelname)s - %(message)s",
    "detailed": "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
}

# Chatty client libraries only log warnings and above
QUIET_MODULES = ["httpx", "httpcore"]


def configure_logging() -> None:
    """Configure root logging from LOG_LEVEL and LOG_FORMAT."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    fmt = LOG_FORMATS.get(os.getenv("LOG_FORMAT", "simple"), LOG_FORMATS["simple"])
    logging.basicConfig(level=level, format=fmt)
    for module in QUIET_MODULES:
        logging.getLogger(module).setLevel(logging.WARNING)
