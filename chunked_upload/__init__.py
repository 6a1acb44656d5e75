"""Chunked, resumable file uploads: a FastAPI chunk receiver and an async upload coordinator."""

__version__ = "1.0.0"
