"""Shared helpers for the upload and analysis services."""

import uuid
from datetime import UTC, datetime


def format_file_size(size_bytes: int) -> str:
    """Format a byte count for log messages and progress payloads.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string (e.g., "1.5 GB")
    """
    size_float = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < 1024.0:
            return f"{size_float:.1f} {unit}"
        size_float = size_float / 1024.0
    return f"{size_float:.1f} PB"


def new_operation_id() -> str:
    """Identifier for one start or resume of an upload."""
    return f"upload_{uuid.uuid4().hex}"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()
