"""JSONL event log for file lifecycle, preview and upload events.

Each event is one JSON object per line in a daily file under
``json/year=YYYY/month=MM/day=DD/events.jsonl``. Events about a single file
carry its id in ``metadata.file_id`` so one record's history can be replayed.
"""

import json
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dropzone.config import get_settings

EVENTS_FILENAME = "events.jsonl"


def _partition(root: Path, day: datetime) -> Path:
    return root / f"year={day.year:04d}" / f"month={day.month:02d}" / f"day={day.day:02d}"


class LogService:
    """Appends lifecycle events to daily JSONL files and queries them back."""

    def __init__(self, log_dir: Path | None = None) -> None:
        """Initialize the log service.

        Args:
            log_dir: Directory for log files; defaults to the configured log directory
        """
        self._log_dir = log_dir
        self._write_lock = threading.Lock()

    @property
    def events_dir(self) -> Path:
        """Root of the partitioned event files, created on first use."""
        log_dir = self._log_dir if self._log_dir is not None else get_settings().log_directory
        events_dir = log_dir / "json"
        events_dir.mkdir(parents=True, exist_ok=True)
        return events_dir

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an event to today's file.

        Args:
            level: One of INFO, WARNING, ERROR (case-insensitive)
            category: lifecycle, preview, upload or app
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional details; ``file_id`` ties the event to a record
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        # Paths and other non-JSON values are written as strings
        line = json.dumps(entry, default=str)

        with self._write_lock:
            day_dir = _partition(self.events_dir, now)
            day_dir.mkdir(parents=True, exist_ok=True)
            with open(day_dir / EVENTS_FILENAME, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def info(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("INFO", category, event, message, metadata)

    def warning(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("WARNING", category, event, message, metadata)

    def error(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("ERROR", category, event, message, metadata)

    def _event_files(self, day: str | None) -> list[Path] | None:
        """Files to scan, newest day first; None when ``day`` is not a valid date."""
        if day:
            try:
                parsed = datetime.strptime(day, "%Y-%m-%d")
            except ValueError:
                return None
            path = _partition(self.events_dir, parsed) / EVENTS_FILENAME
            return [path] if path.exists() else []
        return sorted(self.events_dir.rglob(EVENTS_FILENAME), reverse=True)

    @staticmethod
    def _read_entries(files: list[Path]) -> Iterator[dict[str, Any]]:
        for path in files:
            try:
                with open(path, encoding="utf-8") as f:
                    lines = f.readlines()
            except OSError:
                continue
            for line in lines:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        file_id: int | None = None,
        since: str | None = None,
        offset: int = 0,
        limit: int | None = 100,
    ) -> dict[str, Any]:
        """Query events, newest first, with pagination.

        Args:
            date: Only this day (YYYY-MM-DD); an invalid date matches nothing
            level: Only this level
            category: Only this category
            search: Case-insensitive substring of message or event name
            file_id: Only events about this file record
            since: Only events at or after this ISO-8601 UTC timestamp
            offset: Number of matching entries to skip
            limit: Maximum entries to return; None returns all

        Returns:
            Dict with entries, total count, offset and limit
        """
        page: dict[str, Any] = {"entries": [], "total": 0, "offset": offset, "limit": limit}
        files = self._event_files(date)
        if files is None:
            return page

        wanted_level = level.upper() if level else None
        needle = search.lower() if search else None

        matches: list[dict[str, Any]] = []
        for entry in self._read_entries(files):
            if wanted_level and entry.get("level", "").upper() != wanted_level:
                continue
            if category and entry.get("category") != category:
                continue
            if since and entry.get("timestamp", "") < since:
                continue
            if file_id is not None and (entry.get("metadata") or {}).get("file_id") != file_id:
                continue
            if needle and not (
                needle in entry.get("message", "").lower()
                or needle in entry.get("event", "").lower()
            ):
                continue
            matches.append(entry)

        matches.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        end = None if limit is None else offset + limit
        page["entries"] = matches[offset:end]
        page["total"] = len(matches)
        return page

    def file_history(self, file_id: int, since: str | None = None) -> list[dict[str, Any]]:
        """Every event about one file record, oldest first.

        Args:
            file_id: Record id
            since: Ignore events before this timestamp, typically the record's
                acceptance time so that ids reused by an earlier process do not mix in
        """
        page = self.read_log_entries(file_id=file_id, since=since, limit=None)
        return sorted(page["entries"], key=lambda e: e.get("timestamp", ""))


_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
