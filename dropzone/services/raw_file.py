"""Raw file handles delivered by the selection layer."""

import io
import mimetypes
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO, Protocol, runtime_checkable

DEFAULT_MIME_TYPE = "application/octet-stream"


@runtime_checkable
class RawFile(Protocol):
    """Opaque handle to a user-selected file."""

    name: str
    size: int
    type: str
    last_modified: datetime | None

    def open(self) -> BinaryIO:
        """Open the file's content for binary reading."""
        ...


def guess_mime_type(filename: str) -> str:
    """Guess a MIME type from a filename, falling back to octet-stream."""
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or DEFAULT_MIME_TYPE


@dataclass(frozen=True)
class LocalFile:
    """A file on the local filesystem."""

    path: Path
    name: str
    size: int
    type: str
    last_modified: datetime | None = None

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> "LocalFile":
        """Build a handle from a filesystem path.

        Args:
            path: Path to an existing file
            mime_type: Explicit MIME type; guessed from the extension when omitted

        Returns:
            The LocalFile handle
        """
        file_path = Path(path)
        stat = file_path.stat()
        return cls(
            path=file_path.absolute(),
            name=file_path.name,
            size=stat.st_size,
            type=mime_type if mime_type is not None else guess_mime_type(file_path.name),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
        )

    def open(self) -> BinaryIO:
        return open(self.path, "rb")


@dataclass(frozen=True)
class MemoryFile:
    """A file whose content is already held in memory."""

    name: str
    content: bytes = field(repr=False)
    type: str = DEFAULT_MIME_TYPE
    last_modified: datetime | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    def open(self) -> BinaryIO:
        return io.BytesIO(self.content)
