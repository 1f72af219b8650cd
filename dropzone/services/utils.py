"""Shared utility functions for dropzone services."""

from typing import Any

# Firefox < 53 reports this MIME type for every dragged file
LEGACY_DRAG_MIME_TYPE = "application/x-moz-file"


def format_file_size(size_bytes: int) -> str:
    """Format a file size in bytes to a human-readable string.

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


def format_duration(seconds: float | None) -> str:
    """Format a media duration as H:MM:SS or M:SS."""
    if seconds is None or seconds < 0:
        return ""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def accepts(file: Any, pattern: str | None) -> bool:
    """Check a file against an HTML ``accept`` attribute string.

    Supports comma-separated entries of the form ``*``, ``.ext``,
    ``type/*`` and exact MIME types. An empty pattern accepts everything.

    Args:
        file: Object with ``name`` and ``type`` attributes
        pattern: Accept string, e.g. "image/*,.pdf"

    Returns:
        True if the file matches at least one entry
    """
    if not pattern:
        return True

    name = (getattr(file, "name", "") or "").lower()
    mime_type = (getattr(file, "type", "") or "").lower()
    base_type = mime_type.split("/", 1)[0]

    for entry in pattern.split(","):
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry in ("*", "*/*"):
            return True
        if entry.startswith("."):
            if name.endswith(entry):
                return True
        elif entry.endswith("/*"):
            if base_type == entry[:-2]:
                return True
        elif mime_type == entry:
            return True
    return False
