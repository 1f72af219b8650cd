"""Status enumeration and metadata types shared by the lifecycle services."""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any

from dropzone.services.raw_file import RawFile
from dropzone.services.utils import format_duration, format_file_size


class FileStatus(Enum):
    """Lifecycle status of a single file."""

    REJECTED_FILE_TYPE = "rejected_file_type"
    REJECTED_MAX_FILES = "rejected_max_files"
    PREPARING = "preparing"
    ERROR_FILE_SIZE = "error_file_size"
    GETTING_UPLOAD_PARAMS = "getting_upload_params"
    ERROR_UPLOAD_PARAMS = "error_upload_params"
    UPLOADING = "uploading"
    HEADERS_RECEIVED = "headers_received"
    DONE = "done"
    ERROR_UPLOAD = "error_upload"
    ABORTED = "aborted"
    EXCEPTION_UPLOAD = "exception_upload"
    READY = "ready"

    @property
    def is_rejected(self) -> bool:
        """Rejected files are never retained by the manager."""
        return self in (FileStatus.REJECTED_FILE_TYPE, FileStatus.REJECTED_MAX_FILES)

    @property
    def is_error(self) -> bool:
        return self in (
            FileStatus.ERROR_FILE_SIZE,
            FileStatus.ERROR_UPLOAD_PARAMS,
            FileStatus.ERROR_UPLOAD,
            FileStatus.EXCEPTION_UPLOAD,
        )

    @property
    def is_complete(self) -> bool:
        """Statuses at which percent is pinned to 100."""
        return self in (FileStatus.HEADERS_RECEIVED, FileStatus.DONE, FileStatus.READY)


# Metadata keys owned by the manager; external overrides never touch them
PROTECTED_META_KEYS = frozenset({"id", "status"})


@dataclass
class FileMeta:
    """Mutable metadata tracked for one file."""

    id: int
    name: str
    size: int
    type: str
    uploaded_date: str
    status: FileStatus
    last_modified_date: str | None = None
    percent: float = 0.0
    preview_url: str | None = None
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    video_width: int | None = None
    video_height: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def merge(self, overrides: Mapping[str, Any]) -> None:
        """Merge external metadata, ignoring manager-owned keys.

        Known keys update the matching attribute; anything else lands in
        ``extra``.
        """
        for key, value in overrides.items():
            if key in PROTECTED_META_KEYS:
                continue
            if key in _META_FIELD_NAMES:
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "size": self.size,
            "size_formatted": format_file_size(self.size),
            "type": self.type,
            "last_modified_date": self.last_modified_date,
            "uploaded_date": self.uploaded_date,
            "percent": round(self.percent, 1),
            "status": self.status.value,
        }
        for key in ("preview_url", "width", "height", "duration", "video_width", "video_height"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.duration is not None:
            data["duration_formatted"] = format_duration(self.duration)
        data.update(self.extra)
        return data


_META_FIELD_NAMES = frozenset(f.name for f in fields(FileMeta)) - {"extra"}


@dataclass(frozen=True)
class FileSnapshot:
    """Read-only view of a FileRecord handed to collaborators.

    ``trigger_upload`` is only set for the snapshot passed to the
    upload-ready hook.
    """

    file: RawFile
    meta: Mapping[str, Any]
    trigger_upload: Callable[[], bool] | None = None

    @classmethod
    def of(
        cls,
        file: RawFile,
        meta: FileMeta,
        trigger_upload: Callable[[], bool] | None = None,
    ) -> "FileSnapshot":
        return cls(file=file, meta=MappingProxyType(meta.to_dict()), trigger_upload=trigger_upload)

    @property
    def id(self) -> int:
        return int(self.meta["id"])

    @property
    def name(self) -> str:
        return str(self.meta["name"])

    @property
    def status(self) -> FileStatus:
        return FileStatus(self.meta["status"])

    def to_dict(self) -> dict[str, Any]:
        return dict(self.meta)
